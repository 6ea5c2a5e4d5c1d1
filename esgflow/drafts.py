"""Draft autosave coordination.

A draft is a non-authoritative snapshot of a contributor's in-progress answer,
keyed by ``(data_request_id, contributor_id)``. There is exactly one draft per
key and every save overwrites it in place: no merge, no history, last write
wins. Concurrent saves for the same key (two open tabs) resolve the same way;
saves for different keys never coordinate.

:class:`AutosaveSession` ticks on a fixed interval and pushes the editor's
current payload through :func:`save_draft`; :class:`SavedFlag` is the short
"saved" affordance shown after each successful save.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable

from esgflow.errors import ConflictError, NotFoundError, ValidationError
from esgflow.models import Draft
from esgflow.repository import Repository
from esgflow.utils import json_dump, json_parse, utcnow

log = logging.getLogger(__name__)

AUTOSAVE_INTERVAL_S = 30.0
SAVED_FLAG_TTL_S = 2.0


def save_draft(
    repo: Repository,
    organization_id: str,
    data_request_id: int,
    contributor_id: str,
    payload: dict[str, Any],
    now: datetime | None = None,
) -> Draft:
    """Overwrite the draft for this key with *payload* (caller must commit)."""
    if not contributor_id:
        raise ValidationError("contributor_id is required")
    if not isinstance(payload, dict):
        raise ValidationError("Draft payload must be an object")
    request = repo.get_data_request(organization_id, data_request_id)
    if request.status == "approved":
        raise ConflictError(f"Data request {data_request_id} is already approved")

    return repo.upsert_draft(request.id, contributor_id, json_dump(payload), now or utcnow())


def load_draft(repo: Repository, organization_id: str, data_request_id: int, contributor_id: str) -> Draft:
    request = repo.get_data_request(organization_id, data_request_id)
    draft = repo.get_draft(request.id, contributor_id)
    if draft is None:
        raise NotFoundError("Draft", f"{data_request_id}/{contributor_id}")
    return draft


def draft_payload(draft: Draft | None) -> dict[str, Any]:
    if draft is None:
        return {}
    return json_parse(draft.payload_json, {})


def discard_draft(repo: Repository, data_request_id: int, contributor_id: str) -> bool:
    """Drop the draft for this key if one exists (caller must commit)."""
    draft = repo.get_draft(data_request_id, contributor_id)
    if draft is None:
        return False
    repo.delete(draft)
    return True


class SavedFlag:
    """Transient "saved" indicator that clears itself after *ttl* seconds."""

    def __init__(self, ttl: float = SAVED_FLAG_TTL_S, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl
        self._clock = clock
        self._set_at: float | None = None

    def mark(self) -> None:
        self._set_at = self._clock()

    @property
    def visible(self) -> bool:
        if self._set_at is None:
            return False
        if self._clock() - self._set_at >= self._ttl:
            self._set_at = None
            return False
        return True


class AutosaveSession:
    """Periodically persists an edit session's current payload.

    *snapshot* returns the editor's current payload; *save* persists it (for
    example a closure around :func:`save_draft` plus a commit). Each tick
    saves unconditionally. :meth:`save_now` is the explicit "save as draft"
    action and performs the same overwrite out of band from the timer.
    """

    def __init__(
        self,
        save: Callable[[dict[str, Any]], Any],
        snapshot: Callable[[], dict[str, Any]],
        interval: float = AUTOSAVE_INTERVAL_S,
        flag: SavedFlag | None = None,
    ):
        self._save = save
        self._snapshot = snapshot
        self._interval = interval
        self.flag = flag or SavedFlag()
        self.saves = 0
        self._task: asyncio.Task | None = None

    @property
    def saved(self) -> bool:
        return self.flag.visible

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def save_now(self) -> None:
        self._persist(self._snapshot())

    def _persist(self, payload: dict[str, Any]) -> None:
        self._save(payload)
        self.saves += 1
        self.flag.mark()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                # The write runs off the event loop; the snapshot is taken on it.
                save = asyncio.ensure_future(asyncio.to_thread(self._persist, self._snapshot()))
                await asyncio.shield(save)
            except asyncio.CancelledError:
                await asyncio.wait([save])
                raise
            except Exception as exc:
                # The editor keeps running; the next tick overwrites anyway.
                log.warning("Autosave failed: %s", exc)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
