"""
Push-to-talk session management.

The realtime-audio SDK is an opaque dependency: the session only relies on the
``RtcEngine`` contract below (join/leave a channel, publish/unpublish a local
microphone track, subscribe to remote tracks, publish/unpublish events).
Join credentials are fetched by ``CredentialIssuer`` from a token endpoint;
``issue_channel_token`` is the signing half that endpoint runs, keeping the
app certificate server-side.

States:
    idle -> joining -> joined -> leaving -> idle

``select_peer`` and ``deselect`` are serialized per session. A newer
selection supersedes one that is still joining: the older join is torn down
as soon as it reaches its next step, so the session is never in two channels
and never leaves a published track behind.
"""
from __future__ import annotations

import asyncio
import os
import re
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from agora_token_builder import RtcTokenBuilder

from dispatch_errors import AudioDeviceError, DispatchError, InvalidRequestError, TransientNetworkError
from notifications import Notifier


CHANNEL_PREFIX = "channel_"
CHANNEL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
AUDIO = "audio"
TOKEN_TTL_S = 3600
TOKEN_UID = 0
ROLE_PUBLISHER = 1


def channel_for_peer(peer_id: str, prefix: str = CHANNEL_PREFIX) -> str:
    channel = f"{prefix}{peer_id}"
    if not CHANNEL_NAME_RE.match(channel):
        raise InvalidRequestError(
            {"peer_id": "channel names may only contain letters, digits, '-' and '_'"}
        )
    return channel


def issue_channel_token(
    app_id: str,
    app_certificate: str,
    channel: str,
    *,
    ttl_s: int = TOKEN_TTL_S,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Sign a publisher join token for ``channel``, valid for ``ttl_s`` seconds.

    This is the server half of ``CredentialIssuer``: the response shape is
    ``{"token": ..., "expiresIn": ...}``.
    """
    if not channel:
        raise InvalidRequestError({"channel": "required"})
    if not CHANNEL_NAME_RE.match(channel):
        raise InvalidRequestError(
            {"channel": "channel names may only contain letters, digits, '-' and '_'"}
        )
    expires_at = int(time.time() if now is None else now) + ttl_s
    token = RtcTokenBuilder.buildTokenWithUid(
        app_id, app_certificate, channel, TOKEN_UID, ROLE_PUBLISHER, expires_at
    )
    if not token:
        raise RuntimeError("token builder returned an empty token")
    return {"token": token, "expiresIn": ttl_s}


# ---------------------------
# SDK contract
# ---------------------------
class LocalAudioTrack(ABC):
    @abstractmethod
    async def set_enabled(self, enabled: bool) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class RemoteAudioTrack(ABC):
    @abstractmethod
    def play(self) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...


PublishedHandler = Callable[[str, str], Awaitable[None]]
UnpublishedHandler = Callable[[str, str], None]


class RtcEngine(ABC):
    """The subset of the realtime-audio SDK the session builds on."""

    @abstractmethod
    def set_listeners(self, on_published: PublishedHandler, on_unpublished: UnpublishedHandler) -> None: ...

    @abstractmethod
    async def join(self, app_id: str, channel: str, token: str) -> None: ...

    @abstractmethod
    async def leave(self) -> None: ...

    @abstractmethod
    async def create_microphone_track(self) -> LocalAudioTrack:
        """Raise ``AudioDeviceError`` when no microphone is usable."""

    @abstractmethod
    async def publish(self, track: LocalAudioTrack) -> None: ...

    @abstractmethod
    async def unpublish(self, track: LocalAudioTrack) -> None: ...

    @abstractmethod
    async def subscribe(self, peer_id: str, media_type: str) -> RemoteAudioTrack: ...


class CredentialIssuer:
    """Fetches a time-boxed join token for a channel from the token endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._timeout_s = timeout_s
        self._transport = transport

    @classmethod
    def from_env(cls) -> "CredentialIssuer":
        url = (os.getenv("RTC_TOKEN_URL") or "").strip()
        if not url:
            raise RuntimeError("Missing required environment variables: RTC_TOKEN_URL")
        return cls(url)

    async def issue(self, channel: str) -> str:
        kwargs = {"timeout": self._timeout_s}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        try:
            async with httpx.AsyncClient(**kwargs) as client:
                response = await client.get(self._url, params={"channel": channel})
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"token request failed: {exc}") from exc
        if response.status_code != 200:
            detail = ""
            try:
                detail = (response.json() or {}).get("error", "")
            except ValueError:
                pass
            raise TransientNetworkError(
                f"token request returned {response.status_code} {detail}".strip(),
                status_code=response.status_code,
            )
        try:
            token = (response.json() or {}).get("token")
        except ValueError as exc:
            raise TransientNetworkError("token response was not JSON") from exc
        if not token:
            raise TransientNetworkError("token response carried no token")
        return str(token)


# ---------------------------
# Session
# ---------------------------
class TalkState(str, Enum):
    IDLE = "idle"
    JOINING = "joining"
    JOINED = "joined"
    LEAVING = "leaving"


class _Superseded(Exception):
    pass


class TalkSession:
    def __init__(
        self,
        engine: RtcEngine,
        issuer: CredentialIssuer,
        app_id: str,
        *,
        notifier: Optional[Notifier] = None,
        channel_prefix: str = CHANNEL_PREFIX,
    ):
        if not app_id:
            raise ValueError("app_id is required")
        self._engine = engine
        self._issuer = issuer
        self._app_id = app_id
        self._notifier = notifier
        self._channel_prefix = channel_prefix
        self._lock = asyncio.Lock()
        self._generation = 0
        self._in_channel = False
        self._joins = 0
        self._local_track: Optional[LocalAudioTrack] = None
        self._remote_tracks: Dict[str, RemoteAudioTrack] = {}
        self._remote_listeners: List[Callable[[bool], None]] = []

        self.state = TalkState.IDLE
        self.channel: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.transmitting = False
        self.last_error: Optional[str] = None

        engine.set_listeners(self.handle_peer_published, self.handle_peer_unpublished)

    @property
    def remote_publishers(self) -> frozenset:
        return frozenset(self._remote_tracks)

    @property
    def can_transmit(self) -> bool:
        return self.state is TalkState.JOINED and self._local_track is not None

    def on_remote_active(self, callback: Callable[[bool], None]) -> None:
        self._remote_listeners.append(callback)

    def _emit_remote_active(self, active: bool) -> None:
        for callback in list(self._remote_listeners):
            try:
                callback(active)
            except Exception as exc:
                print(f"[talk] remote-activity listener failed: {exc}")

    def _report(self, title: str, exc: Exception) -> None:
        self.last_error = str(exc)
        print(f"[talk] {title}: {exc}")
        if self._notifier is not None:
            self._notifier.error(title, str(exc))

    # ---------------------------
    # Join / leave
    # ---------------------------
    async def select_peer(self, peer_id: str) -> bool:
        """Switch the session to the peer's channel. Returns True once joined."""
        channel = channel_for_peer(peer_id, self._channel_prefix)
        self._generation += 1
        generation = self._generation
        async with self._lock:
            if generation != self._generation:
                return False
            if self.state is TalkState.JOINED and self.channel == channel:
                return True
            await self._leave_locked()
            try:
                await self._join_locked(peer_id, channel, generation)
            except _Superseded:
                print(f"[talk] join to {channel} superseded, leaving")
                await self._leave_locked()
                return False
            except asyncio.CancelledError:
                await self._leave_locked()
                raise
            except Exception as exc:
                self._report("Could not join talk channel", exc)
                await self._leave_locked()
                return False
            return self.state is TalkState.JOINED

    async def deselect(self) -> None:
        """Leave the current channel (also aborts a join that is in flight)."""
        self._generation += 1
        async with self._lock:
            await self._leave_locked()

    async def close(self) -> None:
        await self.deselect()

    def _check_current(self, generation: int) -> None:
        if generation != self._generation:
            raise _Superseded()

    async def _join_locked(self, peer_id: str, channel: str, generation: int) -> None:
        self.state = TalkState.JOINING
        self.channel = channel
        self.peer_id = peer_id
        try:
            token = await self._issuer.issue(channel)
        except DispatchError as exc:
            self._report("Could not get a talk credential", exc)
            self._reset_idle()
            return
        self._check_current(generation)

        try:
            await self._engine.join(self._app_id, channel, token)
        except Exception as exc:
            self._report("Could not join talk channel", exc)
            self._reset_idle()
            return
        self._in_channel = True
        self._joins += 1
        self._check_current(generation)

        track: Optional[LocalAudioTrack] = None
        try:
            track = await self._engine.create_microphone_track()
            self._local_track = track
            await self._engine.publish(track)
            await track.set_enabled(False)
        except AudioDeviceError as exc:
            # Listen-only: the channel stays joined, transmit will report the failure.
            self._report("Microphone unavailable", exc)
            if track is not None:
                await self._release_local_track()
        self._check_current(generation)

        self.state = TalkState.JOINED
        print(f"[talk] joined {channel}")

    async def _release_local_track(self) -> None:
        track = self._local_track
        self._local_track = None
        self.transmitting = False
        if track is None:
            return
        try:
            await track.set_enabled(False)
        except Exception as exc:
            print(f"[talk] disabling local track failed: {exc}")
        if self._in_channel:
            try:
                await self._engine.unpublish(track)
            except Exception as exc:
                print(f"[talk] unpublish failed: {exc}")
        try:
            track.stop()
            track.close()
        except Exception as exc:
            print(f"[talk] releasing local track failed: {exc}")

    async def _leave_locked(self) -> None:
        if self.state is TalkState.IDLE and not self._in_channel and self._local_track is None:
            return
        previous_channel = self.channel
        self.state = TalkState.LEAVING
        had_remote = bool(self._remote_tracks)
        for peer_id, remote in list(self._remote_tracks.items()):
            try:
                remote.stop()
            except Exception as exc:
                print(f"[talk] stopping remote track {peer_id} failed: {exc}")
        self._remote_tracks.clear()
        if had_remote:
            self._emit_remote_active(False)
        await self._release_local_track()
        if self._in_channel:
            try:
                await self._engine.leave()
            except Exception as exc:
                print(f"[talk] leave failed: {exc}")
            self._in_channel = False
        self._reset_idle()
        if previous_channel:
            print(f"[talk] left {previous_channel}")

    def _reset_idle(self) -> None:
        self.state = TalkState.IDLE
        self.channel = None
        self.peer_id = None
        self.transmitting = False

    # ---------------------------
    # Transmit
    # ---------------------------
    async def press_transmit(self) -> bool:
        if self.state is not TalkState.JOINED:
            return False
        if self._local_track is None:
            self._report("Cannot transmit", AudioDeviceError("no microphone track available"))
            return False
        try:
            await self._local_track.set_enabled(True)
        except Exception as exc:
            self._report("Cannot transmit", exc)
            return False
        self.transmitting = True
        return True

    async def release_transmit(self) -> bool:
        if self.state is not TalkState.JOINED or self._local_track is None:
            return False
        try:
            await self._local_track.set_enabled(False)
        except Exception as exc:
            self._report("Could not stop transmitting", exc)
            return False
        self.transmitting = False
        return True

    # ---------------------------
    # Remote activity
    # ---------------------------
    def _accepting_remote(self) -> bool:
        return self._in_channel and self.state in (TalkState.JOINING, TalkState.JOINED)

    async def handle_peer_published(self, peer_id: str, media_type: str) -> None:
        if media_type != AUDIO or not self._accepting_remote():
            return
        channel = self.channel
        joins = self._joins
        try:
            track = await self._engine.subscribe(peer_id, media_type)
        except Exception as exc:
            print(f"[talk] subscribe to {peer_id} failed: {exc}")
            return
        if not self._accepting_remote() or self.channel != channel or self._joins != joins:
            # The session is leaving or moved on while subscribing.
            track.stop()
            return
        previous = self._remote_tracks.pop(peer_id, None)
        if previous is not None:
            previous.stop()
        track.play()
        self._remote_tracks[peer_id] = track
        self._emit_remote_active(True)

    def handle_peer_unpublished(self, peer_id: str, media_type: str) -> None:
        if media_type != AUDIO:
            return
        track = self._remote_tracks.pop(peer_id, None)
        if track is None:
            return
        track.stop()
        self._emit_remote_active(bool(self._remote_tracks))

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "channel": self.channel,
            "peer_id": self.peer_id,
            "transmitting": self.transmitting,
            "can_transmit": self.can_transmit,
            "remote_publishers": sorted(self._remote_tracks),
            "last_error": self.last_error,
        }


__all__ = [
    "CHANNEL_PREFIX",
    "CredentialIssuer",
    "LocalAudioTrack",
    "RemoteAudioTrack",
    "RtcEngine",
    "TalkSession",
    "TalkState",
    "channel_for_peer",
    "issue_channel_token",
]
