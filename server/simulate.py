"""
Value Cards Simulation Runner

Plays complete four-seat games with simple bots against the in-memory
store. Every bot runs its own RoomCoordinator, exactly like a real client,
so the leader protocol, the change feed and the timed transitions are all
exercised. The card census is checked after every game.

Usage:
    python simulate.py [--games N] [--seed S]

Examples:
    python simulate.py                 # One game
    python simulate.py --games 20      # Twenty games
    python simulate.py --seed 7 -v     # Reproducible deck order, chatty
"""

import argparse
import asyncio
import logging
import random
from typing import Optional

from config import PhaseTiming
from constants import MAX_HAND_SIZE, SEAT_COUNT
from coordinator import RoomCoordinator, RoomSnapshot
from logging_config import setup_logging
from models.entities import ActionResult, FinalPhaseStep, RoomStatus
from services.card_service import CardService
from services.phase_service import PhaseService
from stores.memory_store import MemoryEntityStore
from stores.pubsub import LocalPubSub

logger = logging.getLogger(__name__)

BOT_NAMES = ["Ari", "Bea", "Cyd", "Dov"]

# Short pauses so a game finishes in well under a second of waiting
FAST_TIMING = PhaseTiming(
    VOTING_DURATION_SECONDS=5,
    VOTING_RESULT_DELAY_SECONDS=0.01,
    EXCHANGE_TRANSITION_DELAY_SECONDS=0.01,
    LEADER_POLL_INTERVAL=0.01,
    LEADER_MAX_WAIT=0.05,
    FALLBACK_POLL_INTERVAL=0.05,
)


class SimulationStats:
    """Track simulation statistics."""

    def __init__(self):
        self.games_played = 0
        self.games_completed = 0
        self.total_actions = 0
        self.rejected_actions = 0
        self.exchanges = 0
        self.skips = 0
        self.census_failures = 0
        self.purpose_cards: dict[str, int] = {}

    def record_game(self, completed: bool, purpose_card: Optional[str], census: ActionResult):
        self.games_played += 1
        if completed:
            self.games_completed += 1
        if purpose_card:
            self.purpose_cards[purpose_card] = self.purpose_cards.get(purpose_card, 0) + 1
        if not (census.success and census.data.get("valid")):
            self.census_failures += 1

    def report(self) -> str:
        lines = [
            "=" * 50,
            "SIMULATION RESULTS",
            "=" * 50,
            f"Games played:     {self.games_played}",
            f"Games completed:  {self.games_completed}",
            f"Census failures:  {self.census_failures}",
            f"Actions:          {self.total_actions} ({self.rejected_actions} rejected)",
            f"Exchange round:   {self.exchanges} swaps, {self.skips} skips",
            "",
            "Purpose cards chosen:",
        ]
        for card, count in sorted(self.purpose_cards.items(), key=lambda kv: -kv[1]):
            lines.append(f"  {count:3d}  {card}")
        return "\n".join(lines)


class Bot:
    """One seat. Reacts to every snapshot its coordinator publishes."""

    def __init__(
        self,
        name: str,
        room_id: str,
        player_id: str,
        cards: CardService,
        phases: PhaseService,
        stats: SimulationStats,
        rng: random.Random,
    ):
        self.name = name
        self.room_id = room_id
        self.player_id = player_id
        self.cards = cards
        self.phases = phases
        self.stats = stats
        self.rng = rng
        self.voted = False
        self.shared_in: set[RoomStatus] = set()

    async def _act(self, label: str, call) -> ActionResult:
        result = await call
        self.stats.total_actions += 1
        if not result.success:
            self.stats.rejected_actions += 1
            logger.debug(f"{self.name} {label} rejected: {result.code} {result.message}")
        return result

    async def on_snapshot(self, snap: RoomSnapshot) -> None:
        room, me = snap.room, snap.me
        if me is None or not me.is_active:
            return
        seat = me.player_number

        if room.status == RoomStatus.CHECKIN and not me.has_checked_in:
            await self._act("check_in", self.phases.check_in(self.room_id, self.player_id, self.name))

        elif room.status == RoomStatus.VOTING and not self.voted:
            choice = self.rng.randrange(len(room.card_options))
            result = await self._act("vote", self.phases.cast_vote(self.room_id, self.player_id, choice))
            self.voted = result.success or result.code == "already_voted"

        elif room.status in (RoomStatus.RESONANCE_INITIAL, RoomStatus.RESONANCE_FINAL) and (
            room.status not in self.shared_in or not me.ready_for_next_phase
        ):
            await self._share_resonance(room.status)

        elif room.status == RoomStatus.PLAYING and room.current_turn_player == seat:
            await self._take_turn(room, me)

        elif room.status == RoomStatus.EXCHANGE and room.current_exchange_turn == seat:
            await self._take_exchange_turn(room, me)

        if room.status.is_final_phase:
            await self._final_step(snap)

    async def _share_resonance(self, status: RoomStatus) -> None:
        if status not in self.shared_in:
            pct = self.rng.randrange(0, 101, 10)
            result = await self._act(
                "resonance", self.phases.submit_resonance(self.room_id, self.player_id, pct)
            )
            if result.success:
                self.shared_in.add(status)
        await self._act("ready", self.phases.mark_ready(self.room_id, self.player_id))

    async def _take_turn(self, room, me) -> None:
        if len(me.hand) < MAX_HAND_SIZE and room.deck:
            await self._act("draw", self.cards.draw(self.room_id, self.player_id))
        elif me.hand:
            card = self.rng.choice(me.hand)
            await self._act("discard", self.cards.discard(self.room_id, self.player_id, card))

    async def _take_exchange_turn(self, room, me) -> None:
        if room.discard_pile and me.hand and self.rng.random() < 0.7:
            hand_card = self.rng.choice(me.hand)
            board_card = self.rng.choice(room.discard_pile)
            result = await self._act(
                "exchange",
                self.cards.exchange(self.room_id, self.player_id, hand_card, board_card),
            )
            if result.success:
                self.stats.exchanges += 1
                return
        result = await self._act("skip", self.cards.skip_exchange(self.room_id, self.player_id))
        if result.success:
            self.stats.skips += 1

    async def _final_step(self, snap: RoomSnapshot) -> None:
        room, me = snap.room, snap.me
        celebrated = room.final_phase_turn == me.player_number

        if room.final_phase_step == FinalPhaseStep.SHARING and celebrated and not me.has_shared_final_resonance:
            await self._act(
                "final_resonance",
                self.phases.share_final_resonance(
                    self.room_id,
                    self.player_id,
                    self.rng.randrange(0, 101, 10),
                    f"{self.name} feels {self.rng.choice(['calm', 'seen', 'curious'])}",
                ),
            )
        elif room.final_phase_step == FinalPhaseStep.GIFTING and not celebrated and not me.has_given_final_gift:
            recipient = next(
                (p for p in snap.players if p.is_active and p.player_number == room.final_phase_turn),
                None,
            )
            if recipient is not None:
                await self._act(
                    "gift",
                    self.cards.give_message_gift(
                        self.room_id, self.player_id, recipient.id,
                        f"Thank you, {recipient.display_name}!",
                    ),
                )
        elif room.final_phase_step == FinalPhaseStep.REFLECTION and celebrated:
            await self._act(
                "reflection",
                self.phases.share_final_reflection(
                    self.room_id, self.player_id, f"{self.name} will keep what matters close."
                ),
            )


async def play_game(game_num: int, stats: SimulationStats, rng: random.Random) -> None:
    """Play one complete game and record the result."""
    store = MemoryEntityStore()
    feed = LocalPubSub(server_id=f"sim-{game_num}")
    await feed.start()
    store.add_listener(feed.on_store_change)

    cards = CardService(store, rng=rng)
    phases = PhaseService(store, voting_duration=FAST_TIMING.VOTING_DURATION_SECONDS, rng=rng)

    created = await phases.create_room(BOT_NAMES[0])
    room_id = created.data["room_id"]
    seats = [(BOT_NAMES[0], created.data["player_id"])]
    for name in BOT_NAMES[1:SEAT_COUNT]:
        joined = await phases.join_room(created.data["room_code"], name)
        seats.append((name, joined.data["player_id"]))

    coordinators = []
    for name, player_id in seats:
        bot = Bot(name, room_id, player_id, cards, phases, stats, rng)
        coordinators.append(RoomCoordinator(
            room_id, player_id, store, phases, feed,
            timing=FAST_TIMING, on_snapshot=bot.on_snapshot,
        ))

    for coordinator in coordinators:
        await coordinator.start()

    completed = True
    try:
        await asyncio.gather(*(
            c.wait_for_status(RoomStatus.COMPLETED, timeout=60) for c in coordinators
        ))
    except asyncio.TimeoutError:
        completed = False
        logger.error(f"Game {game_num} stalled")
    finally:
        for coordinator in coordinators:
            await coordinator.stop()
        await feed.stop()

    census = await cards.validate_uniqueness(room_id)
    room = await store.get_room(room_id)
    stats.record_game(completed, room.purpose_card if room else None, census)

    status = room.status.value if room else "missing"
    print(f"Game {game_num}: {status}, purpose '{room.purpose_card if room else None}'")
    print(f"  Census: {census.data.get('total_cards')} cards, "
          f"valid={census.data.get('valid')}, duplicates={census.data.get('duplicates')}")


async def run_simulation(num_games: int, seed: Optional[int]) -> SimulationStats:
    rng = random.Random(seed)
    stats = SimulationStats()

    print(f"\nRunning {num_games} games...")
    print("=" * 50)
    for i in range(num_games):
        await play_game(i + 1, stats, rng)

    print("\n")
    print(stats.report())
    return stats


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Simulate Value Cards games with bots")
    parser.add_argument("--games", type=int, default=1, help="number of games to play")
    parser.add_argument("--seed", type=int, default=None, help="random seed")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args(argv)

    setup_logging(level="DEBUG" if args.verbose else "WARNING")
    stats = asyncio.run(run_simulation(args.games, args.seed))
    return 0 if stats.census_failures == 0 and stats.games_completed == stats.games_played else 1


if __name__ == "__main__":
    raise SystemExit(main())
