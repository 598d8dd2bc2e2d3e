"""
Ambulance Dispatch Console Service (FastAPI)

Purpose
=======
Keep the fleet roster and the transport-request queue of an ambulance
dispatch backend in sync for the dispatch dashboard and crew tablets.

Key features
------------
- Fleet roster with stable status categories, unit CRUD and fleet statistics.
- Nearest available unit for a pickup point (great-circle distance).
- Periodic location publishing for the unit this process tracks.
- Transport-request queue watcher with created/transitioned alerts
  (history, SSE stream and optional Web Push).
- Accept / reject / intake of transport requests, confirmed by the backend.
- Route polyline for a unit via OpenRouteService.
- Signed join tokens for push-to-talk channels.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx pywebpush agora-token-builder
"""

from __future__ import annotations
from typing import Any, Dict, Optional
import os, json
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from dispatch_client import DispatchClient
from dispatch_errors import DispatchError, InvalidRequestError, StateConflictError, TransientNetworkError
from dispatch_lifecycle import DispatchLifecycle, TransitionOutcome, allowed_actions
from dispatch_models import NewTransportRequest, StatusCatalog
from distance_matcher import nearest_available
from fleet_roster import FleetRoster
from geo_sampler import GeoSampler, HttpPositionProvider
from geocoder import ReverseGeocoder
from location_sync import LocationSync
from notifications import Notifier
from periodic import PeriodicTask
from push_alerts import PushAlertSender, PushSubscription, PushSubscriptionStore
from queue_watcher import DispatchQueueWatcher
from routing_client import RouteClient
from talk_session import issue_channel_token

# ---------------------------
# Config
# ---------------------------
TRACKED_UNIT_ID = (os.getenv("TRACKED_UNIT_ID") or "").strip()
LOCATION_SYNC_INTERVAL_S = float(os.getenv("LOCATION_SYNC_INTERVAL_S", "10"))
GEO_TIMEOUT_S = float(os.getenv("GEO_TIMEOUT_S", "5"))
ROSTER_REFRESH_S = float(os.getenv("ROSTER_REFRESH_S", "10"))
QUEUE_POLL_INTERVAL_S = float(os.getenv("QUEUE_POLL_INTERVAL_S", "15"))
QUEUE_MIN_GAP_S = float(os.getenv("QUEUE_MIN_GAP_S", "5"))
STATUS_CATEGORY_MAP = os.getenv("STATUS_CATEGORY_MAP", "")
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:dispatch@example.org")
PUSH_SUBSCRIPTIONS_PATH = Path(os.getenv("PUSH_SUBSCRIPTIONS_PATH", "data/push_subscriptions.json"))
RTC_APP_ID = os.getenv("RTC_APP_ID", "")
RTC_APP_CERTIFICATE = os.getenv("RTC_APP_CERTIFICATE", "")
RTC_TOKEN_TTL_S = int(os.getenv("RTC_TOKEN_TTL_S", "3600"))

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Ambulance Dispatch Console")


class ConsoleState:
    def __init__(self):
        self.notifier = Notifier()
        self.roster = FleetRoster()
        self.catalog: StatusCatalog = StatusCatalog()
        self.client: Optional[DispatchClient] = None
        self.watcher: Optional[DispatchQueueWatcher] = None
        self.lifecycle: Optional[DispatchLifecycle] = None
        self.location_sync: Optional[LocationSync] = None
        self.position_provider: Optional[HttpPositionProvider] = None
        self.geocoder: Optional[ReverseGeocoder] = None
        self.roster_task: Optional[PeriodicTask] = None
        self.route_client: Optional[RouteClient] = None
        self.push_store: Optional[PushSubscriptionStore] = None
        self.push_sender: Optional[PushAlertSender] = None


state = ConsoleState()


def _push_configured() -> bool:
    return bool(VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY)


def _load_catalog() -> StatusCatalog:
    try:
        return StatusCatalog.from_json(STATUS_CATEGORY_MAP)
    except ValueError as exc:
        print(f"[startup] STATUS_CATEGORY_MAP ignored: {exc}")
        return StatusCatalog()


async def _refresh_roster_tick() -> None:
    client = state.client
    if client is None:
        return
    try:
        await state.roster.refresh(client)
    except DispatchError as exc:
        print(f"[roster] refresh failed: {exc}")
        state.notifier.error_once(
            "roster:refresh",
            "Could not load the fleet",
            "The unit list could not be refreshed; retrying on the next cycle.",
        )
        return
    state.notifier.clear("roster:refresh")


@app.on_event("startup")
async def startup() -> None:
    state.catalog = _load_catalog()
    try:
        state.client = DispatchClient.from_env(catalog=state.catalog)
    except RuntimeError as exc:
        print(f"[startup] dispatch backend not configured: {exc}")
        state.client = None

    try:
        state.route_client = RouteClient.from_env()
    except RuntimeError as exc:
        print(f"[route] client not configured: {exc}")
        state.route_client = None

    state.push_store = PushSubscriptionStore(PUSH_SUBSCRIPTIONS_PATH)
    state.push_sender = PushAlertSender(state.push_store, VAPID_PRIVATE_KEY, VAPID_SUBJECT)
    if not _push_configured():
        print("[push] VAPID keys not configured, web push disabled")

    client = state.client
    if client is None:
        return

    try:
        statuses = await client.list_statuses()
        print(f"[startup] loaded {len(statuses)} unit statuses")
    except DispatchError as exc:
        print(f"[startup] could not load unit statuses, using label table: {exc}")

    state.watcher = DispatchQueueWatcher(
        client,
        state.notifier,
        interval_s=QUEUE_POLL_INTERVAL_S,
        min_gap_s=QUEUE_MIN_GAP_S,
    )
    state.watcher.on_change(state.push_sender.handle_change)
    state.lifecycle = DispatchLifecycle(client, state.watcher, state.notifier)
    state.watcher.start()

    if TRACKED_UNIT_ID:
        try:
            state.position_provider = HttpPositionProvider.from_env()
        except RuntimeError as exc:
            print(f"[startup] location sync disabled: {exc}")
            state.position_provider = None
    if TRACKED_UNIT_ID and state.position_provider is not None:
        state.geocoder = ReverseGeocoder.from_env()
        sampler = GeoSampler(state.position_provider, timeout_s=GEO_TIMEOUT_S)
        state.location_sync = LocationSync(
            TRACKED_UNIT_ID,
            sampler,
            client,
            state.roster,
            state.notifier,
            state.geocoder,
            interval_s=LOCATION_SYNC_INTERVAL_S,
        )
        state.location_sync.start()
    else:
        state.roster_task = PeriodicTask("roster_refresh", ROSTER_REFRESH_S, _refresh_roster_tick)
        state.roster_task.start()


@app.on_event("shutdown")
async def shutdown() -> None:
    if state.location_sync is not None:
        state.location_sync.stop()
    if state.roster_task is not None:
        state.roster_task.stop()
    if state.watcher is not None:
        state.watcher.stop()
    if state.push_sender is not None:
        await state.push_sender.drain()
    for closable in (state.client, state.geocoder, state.position_provider):
        if closable is not None:
            await closable.aclose()


# ---------------------------
# Helpers
# ---------------------------
def _http_error(exc: DispatchError) -> HTTPException:
    if isinstance(exc, InvalidRequestError):
        return HTTPException(status_code=400, detail={"errors": exc.errors})
    if isinstance(exc, StateConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransientNetworkError):
        return HTTPException(status_code=502, detail=f"dispatch backend error: {exc}")
    return HTTPException(status_code=502, detail=str(exc))


def _require_client() -> DispatchClient:
    if state.client is None:
        raise HTTPException(status_code=503, detail="dispatch backend not configured")
    return state.client


def _require_watcher() -> DispatchQueueWatcher:
    if state.watcher is None or state.lifecycle is None:
        raise HTTPException(status_code=503, detail="dispatch backend not configured")
    return state.watcher


def _unit_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    plate = str(payload.get("plate") or payload.get("placa") or "").strip()
    status_id = payload.get("statusId", payload.get("estadoId"))
    crew_ids = payload.get("crewIds", payload.get("tripulacion")) or []
    errors: Dict[str, str] = {}
    if not plate:
        errors["plate"] = "required"
    if status_id in (None, ""):
        errors["statusId"] = "required"
    if not isinstance(crew_ids, list):
        errors["crewIds"] = "must be a list"
    if errors:
        raise HTTPException(status_code=400, detail={"errors": errors})
    return {
        "plate": plate,
        "status_id": str(status_id),
        "crew_ids": [str(crew_id) for crew_id in crew_ids],
        "location_label": str(payload.get("locationLabel") or ""),
    }


def _optional_float(value: Any, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail={"errors": {name: "must be a number"}})


# ---------------------------
# REST: Fleet
# ---------------------------
@app.get("/api/units")
async def list_units(refresh: bool = Query(False)):
    if refresh:
        client = _require_client()
        try:
            await state.roster.refresh(client)
        except DispatchError as exc:
            raise _http_error(exc)
    return state.roster.snapshot().to_dict()


@app.get("/api/units/stats")
async def unit_stats():
    snapshot = state.roster.snapshot()
    return {"fetched_at": snapshot.fetched_at, **snapshot.stats()}


@app.get("/api/units/nearest")
async def nearest_unit(lat: float = Query(..., ge=-90, le=90), lon: float = Query(..., ge=-180, le=180)):
    match = nearest_available((lat, lon), state.roster.snapshot().units)
    return {"match": match.to_dict() if match else None}


@app.post("/api/units")
async def create_unit(payload: Dict[str, Any] = Body(...)):
    client = _require_client()
    fields = _unit_fields(payload)
    lat = _optional_float(payload.get("lat", payload.get("latitude")), "lat")
    lon = _optional_float(payload.get("lon", payload.get("longitude")), "lon")
    try:
        unit = await client.create_unit(lat=lat, lon=lon, **fields)
        await state.roster.refresh(client)
    except DispatchError as exc:
        raise _http_error(exc)
    return {"unit": unit.to_dict() if unit else None}


@app.patch("/api/units/{unit_id}")
async def update_unit(unit_id: str, payload: Dict[str, Any] = Body(...)):
    client = _require_client()
    fields = _unit_fields(payload)
    try:
        unit = await client.update_unit(unit_id, **fields)
        await state.roster.refresh(client)
    except DispatchError as exc:
        raise _http_error(exc)
    return {"unit": unit.to_dict() if unit else None}


@app.delete("/api/units/{unit_id}")
async def delete_unit(unit_id: str):
    client = _require_client()
    try:
        await client.delete_unit(unit_id)
        await state.roster.refresh(client)
    except DispatchError as exc:
        raise _http_error(exc)
    return {"deleted": unit_id}


@app.get("/api/crew")
async def list_crew():
    client = _require_client()
    try:
        crew = await client.list_crew()
    except DispatchError as exc:
        raise _http_error(exc)
    return {"crew": [member.to_dict() for member in crew]}


@app.get("/api/crew/unit")
async def crew_unit(email: str = Query(..., min_length=3)):
    unit = state.roster.snapshot().unit_for_crew_email(email)
    if unit is None:
        raise HTTPException(status_code=404, detail="no unit assigned to this crew member")
    return {"unit": unit.to_dict()}


@app.get("/api/statuses")
async def list_statuses():
    client = _require_client()
    try:
        statuses = await client.list_statuses()
    except DispatchError as exc:
        raise _http_error(exc)
    return {"statuses": [status.to_dict() for status in statuses]}


# ---------------------------
# REST: Transport requests
# ---------------------------
@app.get("/api/requests")
async def list_requests():
    watcher = _require_watcher()
    snapshot = watcher.snapshot()
    items = []
    for request in snapshot.requests:
        item = request.to_dict()
        item["actions"] = [action.value for action in allowed_actions(request.status)]
        items.append(item)
    return {"fetched_at": snapshot.fetched_at, "primed": watcher.primed, "requests": items}


@app.post("/api/requests")
async def submit_request(payload: Dict[str, Any] = Body(...)):
    _require_watcher()
    new_request = NewTransportRequest.from_payload(payload)
    try:
        created = await state.lifecycle.submit(new_request)
    except DispatchError as exc:
        raise _http_error(exc)
    return {"request": created.to_dict() if created else None}


@app.post("/api/requests/poll")
async def poll_requests():
    watcher = _require_watcher()
    changes = await watcher.poll(force=True)
    if changes is None:
        raise HTTPException(status_code=502, detail="transport requests could not be refreshed")
    return {"changes": [change.to_dict() for change in changes]}


async def _transition(request_id: str, accept: bool):
    watcher = _require_watcher()
    lifecycle = state.lifecycle
    outcome = await (lifecycle.accept(request_id) if accept else lifecycle.reject(request_id))
    current = watcher.status_of(request_id)
    body = {
        "outcome": outcome.value,
        "request_id": request_id,
        "status": current.value if current else None,
    }
    if outcome is TransitionOutcome.NOT_ALLOWED:
        raise HTTPException(status_code=409, detail=body)
    if outcome is TransitionOutcome.CONFLICT:
        raise HTTPException(status_code=409, detail=body)
    if outcome is TransitionOutcome.FAILED:
        raise HTTPException(status_code=502, detail=body)
    return body


@app.post("/api/requests/{request_id}/accept")
async def accept_request(request_id: str):
    return await _transition(request_id, accept=True)


@app.post("/api/requests/{request_id}/reject")
async def reject_request(request_id: str):
    return await _transition(request_id, accept=False)


# ---------------------------
# REST: Location sync & routing
# ---------------------------
@app.get("/api/location-sync")
async def location_sync_status():
    if state.location_sync is None:
        return {"configured": False, "running": False}
    return {"configured": True, **state.location_sync.status()}


@app.get("/api/route")
async def route(
    start_lat: float = Query(...),
    start_lon: float = Query(...),
    end_lat: float = Query(...),
    end_lon: float = Query(...),
):
    if state.route_client is None:
        raise HTTPException(status_code=503, detail="openrouteservice not configured")
    try:
        coordinates = await state.route_client.fetch_route((start_lat, start_lon), (end_lat, end_lon))
    except DispatchError as exc:
        raise _http_error(exc)
    return {"coordinates": coordinates}


# ---------------------------
# Talk credentials
# ---------------------------
@app.get("/api/talk/token")
async def talk_token(channel: str = Query("")):
    """Publisher join token for a push-to-talk channel."""
    if not (RTC_APP_ID and RTC_APP_CERTIFICATE):
        raise HTTPException(status_code=503, detail="talk credentials not configured")
    try:
        return issue_channel_token(RTC_APP_ID, RTC_APP_CERTIFICATE, channel, ttl_s=RTC_TOKEN_TTL_S)
    except DispatchError as exc:
        raise _http_error(exc)


# ---------------------------
# Notifications (history + SSE)
# ---------------------------
@app.get("/api/notifications")
async def list_notifications(limit: int = Query(50, ge=1, le=500)):
    return {"notifications": [n.to_dict() for n in state.notifier.recent(limit)]}


@app.get("/v1/stream/notifications")
async def stream_notifications():
    notifier = state.notifier

    async def gen():
        q = notifier.subscribe()
        try:
            for item in notifier.recent(10):
                yield f"data: {json.dumps(item.to_dict())}\n\n"
            while True:
                encoded = await q.get()
                yield encoded
        finally:
            notifier.unsubscribe(q)
    return StreamingResponse(gen(), media_type="text/event-stream")


# ---------------------------
# Push Notifications API
# ---------------------------
def _require_push_store() -> PushSubscriptionStore:
    if state.push_store is None:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    return state.push_store


@app.get("/api/push/vapid-public-key")
async def get_vapid_public_key():
    """Return the VAPID public key for push subscription."""
    if not VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    return {"publicKey": VAPID_PUBLIC_KEY}


@app.post("/api/push/subscribe")
async def push_subscribe(request: Request):
    if not _push_configured():
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    store = _require_push_store()
    data = await request.json()
    subscription = PushSubscription.from_payload(data) if isinstance(data, dict) else None
    if subscription is None:
        raise HTTPException(status_code=400, detail="Invalid subscription data")
    is_new = await store.add(subscription)
    return {"status": "subscribed", "new": is_new, "minPriority": subscription.min_priority.value}


@app.post("/api/push/unsubscribe")
async def push_unsubscribe(request: Request):
    store = _require_push_store()
    data = await request.json()
    endpoint = data.get("endpoint")
    if not endpoint:
        raise HTTPException(status_code=400, detail="Missing endpoint")
    removed = await store.remove(endpoint)
    return {"status": "unsubscribed", "found": removed}


@app.get("/api/push/status")
async def push_status():
    """Push diagnostics."""
    count = await state.push_store.count() if state.push_store is not None else 0
    return {
        "configured": _push_configured(),
        "subscription_count": count,
        "sent_count": state.push_sender.sent_count if state.push_sender is not None else 0,
    }
