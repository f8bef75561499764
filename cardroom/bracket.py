"""Single-elimination brackets for 4 and 8 player tournaments.

Brackets are immutable values: :func:`advance` never touches the bracket it
is given and returns a new one instead, so a caller still holding the old
value can never see it change underneath them.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Sequence, Tuple

from .errors import InvalidBracketSize, InvalidWinnerAssignment, ParticipantCountMismatch

PENDING = 'pending'
ACTIVE = 'active'
COMPLETED = 'completed'
MATCH_STATUSES = (PENDING, ACTIVE, COMPLETED)

ROUND_NAMES = {
    4: ('Semi-Finals', 'Final'),
    8: ('Quarter-Finals', 'Semi-Finals', 'Final'),
}


@dataclass(frozen=True)
class Match:
    player1: Optional[int] = None
    player2: Optional[int] = None
    winner: Optional[int] = None
    status: str = PENDING

    @property
    def is_resolved(self) -> bool:
        """Both player slots are filled."""
        return self.player1 is not None and self.player2 is not None

    def players(self) -> Tuple[Optional[int], Optional[int]]:
        return (self.player1, self.player2)

    def to_dict(self):
        return {
            'player1Id': self.player1,
            'player2Id': self.player2,
            'winnerId': self.winner,
            'status': self.status,
        }

    @classmethod
    def from_dict(cls, data) -> 'Match':
        return cls(
            player1=data.get('player1Id'),
            player2=data.get('player2Id'),
            winner=data.get('winnerId'),
            status=data.get('status', PENDING),
        )


@dataclass(frozen=True)
class Round:
    number: int
    name: str
    matches: Tuple[Match, ...]

    @property
    def is_complete(self) -> bool:
        return all(m.status == COMPLETED for m in self.matches)

    def to_dict(self):
        return {
            'roundNumber': self.number,
            'name': self.name,
            'matches': [m.to_dict() for m in self.matches],
        }

    @classmethod
    def from_dict(cls, data) -> 'Round':
        return cls(
            number=data['roundNumber'],
            name=data['name'],
            matches=tuple(Match.from_dict(m) for m in data['matches']),
        )


@dataclass(frozen=True)
class Bracket:
    max_players: int
    rounds: Tuple[Round, ...]

    @property
    def total_rounds(self) -> int:
        return len(self.rounds)

    def round(self, number: int) -> Optional[Round]:
        if 1 <= number <= len(self.rounds):
            return self.rounds[number - 1]
        return None

    def has_round(self, number: int) -> bool:
        return self.round(number) is not None

    def with_round(self, rnd: Round) -> 'Bracket':
        rounds = list(self.rounds)
        rounds[rnd.number - 1] = rnd
        return replace(self, rounds=tuple(rounds))

    def to_dict(self):
        return {
            'maxPlayers': self.max_players,
            'totalRounds': self.total_rounds,
            'rounds': [r.to_dict() for r in self.rounds],
        }

    @classmethod
    def from_dict(cls, data) -> 'Bracket':
        return cls(
            max_players=data['maxPlayers'],
            rounds=tuple(Round.from_dict(r) for r in data['rounds']),
        )


# --- Builder ---

def build(max_players: int, participants: Sequence[int]) -> Bracket:
    """Build the initial bracket for a full tournament.

    Seeding is the join order: ``participants[0]`` plays ``participants[1]``,
    ``participants[2]`` plays ``participants[3]`` and so on. There is no
    shuffling or ranking, so the same input always gives the same bracket.
    """
    if max_players not in ROUND_NAMES:
        raise InvalidBracketSize()
    if len(participants) != max_players:
        raise ParticipantCountMismatch(
            f'Tournament requires exactly {max_players} players, got {len(participants)}'
        )
    first = tuple(
        Match(player1=participants[i], player2=participants[i + 1])
        for i in range(0, max_players, 2)
    )
    rounds = [Round(number=1, name=ROUND_NAMES[max_players][0], matches=first)]
    size = len(first) // 2
    for number, name in enumerate(ROUND_NAMES[max_players][1:], start=2):
        rounds.append(Round(number=number, name=name, matches=tuple(Match() for _ in range(size))))
        size //= 2
    return Bracket(max_players=max_players, rounds=tuple(rounds))


# --- Progression ---

def advance(bracket: Bracket, completed_round: int, winners: Sequence[int]) -> Bracket:
    """Complete ``completed_round`` with ``winners`` and seed the next round.

    The winners of matches ``2i`` and ``2i + 1`` become the players of match
    ``i`` in the following round, which is then marked active. Advancing the
    final round only records its winner; whether the tournament is over is
    for the caller to decide from ``bracket.has_round(completed_round + 1)``.
    """
    rnd = bracket.round(completed_round)
    if rnd is None:
        raise InvalidWinnerAssignment(f'Round {completed_round} does not exist')
    if len(winners) != len(rnd.matches):
        raise InvalidWinnerAssignment(
            f'Round {completed_round} has {len(rnd.matches)} matches, got {len(winners)} winners'
        )
    for index, (match, winner) in enumerate(zip(rnd.matches, winners)):
        if not match.is_resolved or winner not in match.players():
            raise InvalidWinnerAssignment(
                f'Winner of match {index} in round {completed_round} is not one of its players'
            )

    done = replace(rnd, matches=tuple(
        replace(m, winner=w, status=COMPLETED) for m, w in zip(rnd.matches, winners)
    ))
    result = bracket.with_round(done)

    following = result.round(completed_round + 1)
    if following is not None:
        seeded = tuple(
            replace(m, player1=winners[2 * i], player2=winners[2 * i + 1], status=ACTIVE)
            for i, m in enumerate(following.matches)
        )
        result = result.with_round(replace(following, matches=seeded))
    return result


def record_winner(bracket: Bracket, round_number: int, match_index: int, winner: int) -> Bracket:
    """Mark a single match of ``round_number`` as won by ``winner``."""
    rnd = bracket.round(round_number)
    if rnd is None or not 0 <= match_index < len(rnd.matches):
        raise InvalidWinnerAssignment(f'No match {match_index} in round {round_number}')
    match = rnd.matches[match_index]
    if not match.is_resolved or winner not in match.players():
        raise InvalidWinnerAssignment(f'Player {winner} is not in match {match_index}')
    matches = list(rnd.matches)
    matches[match_index] = replace(match, winner=winner, status=COMPLETED)
    return bracket.with_round(replace(rnd, matches=tuple(matches)))


def round_winners(rnd: Round):
    return [m.winner for m in rnd.matches]
