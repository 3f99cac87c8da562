# src/tbw/runtime/voter_replay.py
from __future__ import annotations

"""Voter set replay.

Reconstructs, for every forged block, which addresses were voting for the
delegate when the block was forged.

The walk runs newest -> oldest. Starting from the current voter set, each
block window [block.height, previous_height) has its vote mutations undone, so a
block sees the voter set as it stood right before the block, the same instant
the balance replay reconstructs. The newest block's window is open-ended: the
current set already reflects every mutation at or after it.

  - "+" (vote)   : the voter was not yet voting before it -> remove
  - "-" (unvote) : the voter was still voting before it   -> add back

Each window is a pure fold over the round set; every per-block snapshot is its
own list.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from tbw.ledger.types import ForgedBlock, VoterMutation
from tbw.runtime.config import TbwConfig
from tbw.runtime.structured_logging import log_event

log = logging.getLogger("tbw.voter_replay")


@dataclass(frozen=True)
class VoterReplayResult:
    # height -> ordered voter addresses (descending height order)
    voters_per_forged_block: Dict[int, List[str]]
    # every address seen voting during the window, after black/whitelist
    voters: List[str]
    # every address seen voting during the window, before black/whitelist
    historical_voters: List[str] = field(default_factory=list)


def order_mutations(mutations: Iterable[VoterMutation]) -> List[VoterMutation]:
    """Ascending (height, sequence); stable, so rows without a sequence keep log order."""
    return sorted(mutations, key=lambda m: (m.height, m.sequence if m.sequence is not None else -1))


def mutations_in_window(
    mutations: Sequence[VoterMutation], height: int, previous_height: Optional[int]
) -> List[VoterMutation]:
    if previous_height is None:
        return [m for m in mutations if m.height >= height]
    return [m for m in mutations if height <= m.height < previous_height]


def fold_mutation(round_voters: Tuple[str, ...], mutation: VoterMutation) -> Tuple[str, ...]:
    """Undo one mutation walking backward in time."""
    if mutation.is_vote:
        return tuple(a for a in round_voters if a != mutation.address)
    if mutation.address in round_voters:
        return round_voters
    return round_voters + (mutation.address,)


def replay_window(round_voters: Tuple[str, ...], window: Sequence[VoterMutation]) -> Tuple[str, ...]:
    # Undo newest first: walking back in time the latest mutation is reverted first.
    state = round_voters
    for m in reversed(window):
        state = fold_mutation(state, m)
    return state


class VoterReplay:
    def __init__(self, config: TbwConfig) -> None:
        self._blacklist = frozenset(config.blacklist)
        self._whitelist = frozenset(config.whitelist)

    def replay(
        self,
        current_voters: Sequence[str],
        mutations: Iterable[VoterMutation],
        forged_blocks: Sequence[ForgedBlock],
    ) -> VoterReplayResult:
        ordered = order_mutations(mutations)
        historical: List[str] = list(dict.fromkeys(current_voters))
        known = set(historical)

        round_voters: Tuple[str, ...] = tuple(historical)
        per_block: Dict[int, List[str]] = {}
        previous_height: Optional[int] = None

        for block in forged_blocks:
            window = mutations_in_window(ordered, block.height, previous_height)
            for m in window:
                if m.address not in known:
                    known.add(m.address)
                    historical.append(m.address)

            round_voters = replay_window(round_voters, window)
            per_block[block.height] = list(round_voters)
            previous_height = block.height

        voters = self.apply_voter_lists(historical)
        log_event(
            log,
            "voter_replay_done",
            blocks=len(per_block),
            mutations=len(ordered),
            historical_voters=len(historical),
            eligible_voters=len(voters),
        )
        return VoterReplayResult(voters_per_forged_block=per_block, voters=voters, historical_voters=historical)

    def apply_voter_lists(self, voters: Iterable[str]) -> List[str]:
        """Blacklist always wins; a non-empty whitelist admits only its members."""
        out: List[str] = []
        for address in voters:
            if address in self._blacklist:
                log.warning("Blacklisted address: %s removed from payout pool.", address)
                continue
            if self._whitelist and address not in self._whitelist:
                continue
            out.append(address)
        return out
