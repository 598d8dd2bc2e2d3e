import math
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dispatch_models import Status, StatusCategory, Unit  # noqa: E402
from distance_matcher import R_EARTH_KM, haversine_km, nearest_available  # noqa: E402


AVAILABLE = Status(id="1", label="Available", category=StatusCategory.AVAILABLE)
BUSY = Status(id="2", label="In service", category=StatusCategory.BUSY)
MAINTENANCE = Status(id="3", label="In maintenance", category=StatusCategory.OUT_OF_SERVICE)


def _unit(unit_id, status=AVAILABLE, lat=None, lon=None):
    return Unit(id=unit_id, plate=f"AMB-{unit_id}", status=status, lat=lat, lon=lon)


def test_same_point_is_zero():
    assert haversine_km((10.9639, -74.7964), (10.9639, -74.7964)) == 0.0


def test_one_degree_of_latitude():
    assert abs(haversine_km((0.0, 0.0), (1.0, 0.0)) - 111.195) < 0.01


def test_antipodal_points_do_not_overflow_asin():
    assert abs(haversine_km((0.0, 0.0), (0.0, 180.0)) - math.pi * R_EARTH_KM) < 1e-6


def test_distance_is_symmetric():
    a = (10.98, -74.81)
    b = (11.0, -74.79)
    assert haversine_km(a, b) == haversine_km(b, a)


def test_nearest_picks_closest_available_unit():
    units = [
        _unit("far", lat=11.2, lon=-74.8),
        _unit("near", lat=10.97, lon=-74.8),
    ]
    match = nearest_available((10.9639, -74.7964), units)
    assert match is not None
    assert match.unit.id == "near"
    assert match.distance_km < 2


def test_busy_and_maintenance_units_are_never_matched():
    units = [
        _unit("busy", status=BUSY, lat=10.9639, lon=-74.7964),
        _unit("shop", status=MAINTENANCE, lat=10.9640, lon=-74.7964),
        _unit("ok", lat=11.5, lon=-74.0),
    ]
    match = nearest_available((10.9639, -74.7964), units)
    assert match is not None
    assert match.unit.id == "ok"


def test_units_without_position_are_skipped():
    units = [_unit("blind"), _unit("seen", lat=10.0, lon=-74.0)]
    match = nearest_available((10.9639, -74.7964), units)
    assert match.unit.id == "seen"


def test_no_candidates_returns_none():
    assert nearest_available((0.0, 0.0), []) is None
    assert nearest_available((0.0, 0.0), [_unit("busy", status=BUSY, lat=0.0, lon=0.0)]) is None


def test_tie_keeps_first_unit_in_input_order():
    units = [_unit("a", lat=1.0, lon=0.0), _unit("b", lat=-1.0, lon=0.0)]
    assert nearest_available((0.0, 0.0), units).unit.id == "a"
    assert nearest_available((0.0, 0.0), list(reversed(units))).unit.id == "b"


def test_match_to_dict_rounds_distance():
    match = nearest_available((0.0, 0.0), [_unit("a", lat=1.0, lon=0.0)])
    payload = match.to_dict()
    assert payload["unit"]["id"] == "a"
    assert payload["distance_km"] == round(match.distance_km, 3)


def test_london_to_paris_reference_distance():
    assert abs(haversine_km((51.5074, -0.1278), (48.8566, 2.3522)) - 343.5) < 1.0


def test_selects_two_km_unit_among_five_two_eight():
    km_per_degree = math.pi * R_EARTH_KM / 180
    units = [
        _unit("five", lat=5 / km_per_degree, lon=0.0),
        _unit("two", lat=2 / km_per_degree, lon=0.0),
        _unit("eight", lat=8 / km_per_degree, lon=0.0),
    ]
    match = nearest_available((0.0, 0.0), units)
    assert match.unit.id == "two"
    assert abs(match.distance_km - 2.0) < 1e-6
