"""
Client-side coordination for Value Cards rooms.

Every connected seat runs a RoomCoordinator. It keeps a fresh snapshot of
the room and drives the automatic phase transitions that no single player
action triggers:

    waiting -> checkin          leader (seat 0), once four seats are taken
    checkin -> voting           leader, once every seat has checked in
    voting countdown anchor     anyone, first writer wins
    voting -> voting_result     anyone, all voted or countdown expired
    voting_result -> resonance  anyone, after a short display pause
    exchange -> playing         anyone, after the last exchange turn + pause

Leader transitions are attempted by seat 0 only. Other seats poll for the
result and, if the leader stays silent past a bounded wait, issue the same
conditional write themselves. Every write is conditional on the expected
status, so duplicates are harmless no-ops.

Change-feed messages and the fallback poll both just request a
reconcile(); a single worker task runs reconciles one at a time. A write
that fails (store outage, lost lock) asks for another reconcile shortly
after, so a transient error never parks the room in its current phase.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from config import PhaseTiming
from constants import LEADER_SEAT
from errors import StoreError
from models.entities import ActionResult, Player, Room, RoomStatus, Vote
from phases import (
    active_players,
    all_checked_in,
    exchange_round_done,
    room_is_full,
    voting_seconds_remaining,
)
from services.phase_service import PhaseService
from stores.entity_store import EntityStore
from stores.pubsub import LocalPubSub, PubSubMessage

logger = logging.getLogger(__name__)


@dataclass
class RoomSnapshot:
    """What a client currently believes about its room."""
    room: Room
    players: list[Player]
    me: Optional[Player]
    votes: list[Vote] = field(default_factory=list)

    @property
    def is_leader(self) -> bool:
        return self.me is not None and self.me.is_active and self.me.player_number == LEADER_SEAT


SnapshotListener = Callable[[RoomSnapshot], Awaitable[None]]
PhaseAction = Callable[[str], Awaitable]


class RoomCoordinator:
    """Keeps one client's view of a room fresh and drives automatic transitions."""

    def __init__(
        self,
        room_id: str,
        player_id: str,
        store: EntityStore,
        phases: PhaseService,
        feed: Optional[LocalPubSub] = None,
        timing: Optional[PhaseTiming] = None,
        on_snapshot: Optional[SnapshotListener] = None,
    ):
        """
        Args:
            room_id: Room to follow.
            player_id: The local participant (seat or spectator).
            store: Entity store to read snapshots from.
            phases: Phase operations used for transitions.
            feed: Change feed; without one the coordinator only polls.
            timing: Timer and polling intervals.
            on_snapshot: Called with every fresh snapshot.
        """
        self.room_id = room_id
        self.player_id = player_id
        self.store = store
        self.phases = phases
        self.feed = feed
        self.timing = timing or PhaseTiming()
        self.on_snapshot = on_snapshot

        self.snapshot: Optional[RoomSnapshot] = None
        self._running = False
        self._pending = False
        self._worker: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._timers: dict[str, asyncio.Task] = {}
        self._updated = asyncio.Event()

    @property
    def room(self) -> Optional[Room]:
        return self.snapshot.room if self.snapshot else None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to the change feed, start the fallback poll and sync once."""
        if self._running:
            return
        self._running = True
        if self.feed is not None:
            await self.feed.subscribe(self.room_id, self._on_message)
        self._poll_task = asyncio.create_task(self._poll_loop())
        self.request_reconcile()

    async def stop(self) -> None:
        """Unsubscribe and cancel every local timer. In-flight writes still complete."""
        self._running = False
        if self.feed is not None:
            await self.feed.remove_handler(self.room_id, self._on_message)

        tasks = [t for t in (self._poll_task, self._worker, *self._timers.values()) if t]
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timers.clear()
        self._poll_task = None
        self._worker = None

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def _on_message(self, msg: PubSubMessage) -> None:
        self.request_reconcile()

    async def _poll_loop(self) -> None:
        """Poll only while the change feed cannot be trusted."""
        while self._running:
            await asyncio.sleep(self.timing.FALLBACK_POLL_INTERVAL)
            if self.feed is None or not self.feed.is_connected:
                self.request_reconcile()

    def request_reconcile(self) -> None:
        """Ask for a reconcile; coalesces with one already queued."""
        if not self._running:
            return
        self._pending = True
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._reconcile_worker())

    async def _reconcile_worker(self) -> None:
        while self._pending and self._running:
            self._pending = False
            try:
                await self.reconcile()
            except StoreError as e:
                logger.warning(f"Reconcile of room {self.room_id[:8]} failed: {e}")
                self._retry_later()
            except Exception as e:
                logger.error(f"Reconcile of room {self.room_id[:8]} failed: {e}", exc_info=True)
                self._retry_later()

    async def reconcile(self) -> Optional[RoomSnapshot]:
        """
        Re-read the room, drive any due transition and publish the snapshot.
        """
        room = await self.store.get_room(self.room_id)
        if room is None:
            logger.warning(f"Room {self.room_id[:8]} disappeared")
            return None
        players = await self.store.list_players(self.room_id)
        votes = await self.store.list_votes(self.room_id) if room.status == RoomStatus.VOTING else []
        me = next((p for p in players if p.id == self.player_id), None)
        self.snapshot = RoomSnapshot(room=room, players=players, me=me, votes=votes)

        await self._drive(self.snapshot)

        if self.on_snapshot is not None:
            await self.on_snapshot(self.snapshot)
        self._updated.set()
        return self.snapshot

    async def wait_for_status(self, *statuses: RoomStatus, timeout: float = 30.0) -> Room:
        """
        Wait until the local snapshot reaches one of ``statuses``.

        Raises:
            asyncio.TimeoutError: If it does not happen within ``timeout``.
        """
        async def _wait() -> Room:
            while self.room is None or self.room.status not in statuses:
                self._updated.clear()
                await self._updated.wait()
            return self.room

        return await asyncio.wait_for(_wait(), timeout)

    # -------------------------------------------------------------------------
    # Transition driving
    # -------------------------------------------------------------------------

    async def _drive(self, snap: RoomSnapshot) -> None:
        room = snap.room
        if snap.me is None or not snap.me.is_active:
            # Spectators watch but never write
            return

        if room.status == RoomStatus.WAITING and room_is_full(snap.players):
            await self._leader_transition(snap, self.phases.start_checkin)

        elif room.status == RoomStatus.CHECKIN and all_checked_in(snap.players):
            await self._leader_transition(snap, self.phases.start_voting)

        elif room.status == RoomStatus.VOTING:
            await self._drive_voting(snap)

        elif room.status == RoomStatus.VOTING_RESULT:
            self._schedule(
                "voting_result",
                self.timing.VOTING_RESULT_DELAY_SECONDS,
                self.phases.finish_voting_result,
            )

        elif exchange_round_done(room, len(active_players(snap.players))):
            self._schedule(
                "exchange_done",
                self.timing.EXCHANGE_TRANSITION_DELAY_SECONDS,
                self.phases.finish_exchange,
            )

    async def _drive_voting(self, snap: RoomSnapshot) -> None:
        room = snap.room
        if room.voting_started_at is None:
            self._check(await self.phases.mark_voting_started(self.room_id))
            return

        if len(snap.votes) >= len(active_players(snap.players)):
            self._check(await self.phases.resolve_voting(self.room_id))
            return

        remaining = voting_seconds_remaining(
            room.voting_started_at,
            self.timing.VOTING_DURATION_SECONDS,
            self.phases.clock(),
        )
        self._schedule(
            f"voting_deadline:{room.voting_started_at.isoformat()}",
            remaining,
            self._resolve_after_deadline,
        )

    async def _resolve_after_deadline(self, room_id: str) -> ActionResult:
        result = await self.phases.resolve_voting(room_id)
        if result.success and not result.data.get("resolved"):
            # Our clock ran slightly ahead of the deadline check
            room = await self.store.get_room(room_id)
            if room is not None and room.status == RoomStatus.VOTING:
                await asyncio.sleep(self.timing.LEADER_POLL_INTERVAL)
                result = await self.phases.resolve_voting(room_id)
                if result.success and not result.data.get("resolved"):
                    self._retry_later()
        return result

    async def _leader_transition(self, snap: RoomSnapshot, action: PhaseAction) -> None:
        """Leader writes now; everyone else waits for it, then takes over."""
        if snap.is_leader:
            self._check(await action(self.room_id))
            return
        status = snap.room.status
        self._schedule(
            f"leader:{status.value}",
            0,
            lambda room_id: self._await_leader(status, action),
        )

    async def _await_leader(self, status: RoomStatus, action: PhaseAction) -> Optional[ActionResult]:
        waited = 0.0
        while waited < self.timing.LEADER_MAX_WAIT:
            await asyncio.sleep(self.timing.LEADER_POLL_INTERVAL)
            waited += self.timing.LEADER_POLL_INTERVAL
            room = await self.store.get_room(self.room_id)
            if room is None or room.status != status:
                self.request_reconcile()
                return None

        # Forced re-check before taking over
        result = None
        room = await self.store.get_room(self.room_id)
        if room is not None and room.status == status:
            logger.info(
                f"Leader silent for {self.timing.LEADER_MAX_WAIT}s in room "
                f"{self.room_id[:8]} ({status.value}), taking over"
            )
            result = await action(self.room_id)
        self.request_reconcile()
        return result

    def _check(self, result: ActionResult) -> None:
        """Re-arm a failed transition with a later reconcile."""
        if not result.success:
            logger.warning(f"Room {self.room_id[:8]}: {result.message} ({result.code})")
            self._retry_later()

    def _retry_later(self) -> None:
        """Reconcile again shortly, whether or not the change feed says anything."""
        if not self._running:
            return
        self._schedule("retry", self.timing.LEADER_POLL_INTERVAL, self._reconcile_now)

    async def _reconcile_now(self, room_id: str) -> None:
        self.request_reconcile()

    def _schedule(self, key: str, delay: float, action: PhaseAction) -> None:
        """
        Run ``action(room_id)`` after ``delay`` seconds, one task per key.

        The key is released when the task ends, so a later reconcile can arm
        it again. A failure (an exception or an unsuccessful ActionResult)
        triggers that reconcile itself.
        """
        existing = self._timers.get(key)
        if existing is not None and not existing.done():
            return

        async def _fire() -> None:
            failed = False
            try:
                if delay > 0:
                    await asyncio.sleep(delay)
                if self._running:
                    result = await action(self.room_id)
                    if isinstance(result, ActionResult) and not result.success:
                        logger.warning(f"Timer {key} in room {self.room_id[:8]}: {result.message}")
                        failed = True
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Timer {key} failed: {e}", exc_info=True)
                failed = True
            finally:
                if self._timers.get(key) is asyncio.current_task():
                    del self._timers[key]

            if failed:
                self._retry_later()

        self._timers[key] = asyncio.create_task(_fire())
