"""Tournament lifecycle: registration -> active -> completed, or cancelled.

Each state transition runs inside :func:`atomic`, which re-reads the
tournament and the affected balances, validates, applies ledger effects and
the bracket change, then commits once. Tournaments and users are versioned
rows, so if another request committed a change to either in the meantime
the flush fails and the whole unit is retried from a fresh read.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from . import bracket as brackets
from . import ledger
from .errors import (
    AccountSuspended,
    AlreadyRegistered,
    AwardLocked,
    ConcurrentModification,
    DuplicateName,
    InvalidConfiguration,
    InvalidWinner,
    MatchAlreadyCompleted,
    MatchNotFound,
    NotAuthorized,
    RoundMismatch,
    TournamentAlreadyTerminal,
    TournamentFull,
    TournamentNotActive,
    TournamentNotFound,
    TournamentNotJoinable,
    UserNotFound,
)
from .models import (
    ACTIVE,
    BRACKET_SIZES,
    CANCELLED,
    COMPLETED,
    DEFAULT_AWARD_PERCENTAGE,
    REGISTRATION,
    TOURNAMENT_STATUSES,
    TOURNAMENT_TYPES,
    Tournament,
    TournamentPlayer,
    User,
)

DEFAULT_RETRIES = 3


def atomic(session, work, attempts=DEFAULT_RETRIES):
    """Run ``work()`` and commit, retrying on write conflicts.

    Conflicts are stale versioned rows, unique-constraint races and SQLite
    lock timeouts. Anything else, including every caller-facing error, rolls
    back and propagates without a retry.
    """
    for _ in range(max(attempts, 1)):
        try:
            result = work()
            session.commit()
            return result
        except (StaleDataError, IntegrityError):
            session.rollback()
        except OperationalError as e:
            session.rollback()
            if not _is_lock_timeout(e):
                raise
        except Exception:
            session.rollback()
            raise
    raise ConcurrentModification()


def _is_lock_timeout(err):
    return 'database is locked' in str(err.orig)


# --- input validation ---

def _require_admin(actor):
    if actor is None or not getattr(actor, 'is_admin', False):
        raise NotAuthorized()


def _int(value, field, minimum=None, maximum=None):
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfiguration(f'{field} must be an integer')
    if minimum is not None and value < minimum:
        raise InvalidConfiguration(f'{field} must be at least {minimum}')
    if maximum is not None and value > maximum:
        raise InvalidConfiguration(f'{field} must be at most {maximum}')
    return value


def _optional_date(value, field):
    if value is not None and not isinstance(value, datetime):
        raise InvalidConfiguration(f'{field} must be a datetime')
    return value


def _user_id(user):
    return user.id if isinstance(user, User) else user


class TournamentController:
    """Entry point for every tournament mutation.

    The session is injected by the caller; the controller never reaches for
    application globals.
    """

    def __init__(self, session, retries=DEFAULT_RETRIES, clock=datetime.utcnow):
        self.session = session
        self.retries = retries
        self.clock = clock

    def _atomic(self, work):
        return atomic(self.session, work, self.retries)

    def _load(self, tournament_id) -> Tournament:
        if isinstance(tournament_id, bool) or not isinstance(tournament_id, int):
            raise TournamentNotFound()
        t = self.session.get(Tournament, tournament_id)
        if t is None:
            raise TournamentNotFound()
        return t

    def _load_user(self, user_id) -> User:
        if isinstance(user_id, bool) or not isinstance(user_id, int):
            raise UserNotFound()
        u = self.session.get(User, user_id)
        if u is None:
            raise UserNotFound()
        return u

    # ---------- reads ----------
    def get(self, tournament_id) -> Tournament:
        return self._load(tournament_id)

    def list(self, status=None):
        q = self.session.query(Tournament)
        if status:
            if status not in TOURNAMENT_STATUSES:
                raise InvalidConfiguration(f'Unknown status {status!r}')
            q = q.filter_by(status=status)
        return q.order_by(Tournament.created_at.desc(), Tournament.id.desc()).all()

    def players(self, tournament_id):
        t = self._load(tournament_id)
        return [tp.user for tp in t.players]

    # ---------- create ----------
    def create(self, name, type, max_players, entry_cost, prize_pool, start_date=None,
               actor=None, description='', end_date=None):
        _require_admin(actor)
        if not isinstance(name, str) or not name.strip():
            raise InvalidConfiguration('Name is required')
        name = name.strip()
        if len(name) > 255:
            raise InvalidConfiguration('Name must be at most 255 characters')
        if type not in TOURNAMENT_TYPES:
            raise InvalidConfiguration('Type must be public or private')
        _int(max_players, 'maxPlayers')
        if max_players not in BRACKET_SIZES:
            raise InvalidConfiguration('Max players must be 4 or 8')
        _int(entry_cost, 'entryCost', minimum=1)
        _int(prize_pool, 'prizePool', minimum=1)
        _optional_date(start_date, 'startDate')
        _optional_date(end_date, 'endDate')
        if description is not None and not isinstance(description, str):
            raise InvalidConfiguration('Description must be text')

        def work():
            exists = self.session.query(Tournament.id).filter_by(name=name).first()
            if exists:
                raise DuplicateName()
            t = Tournament(
                name=name,
                description=(description or '').strip(),
                type=type,
                max_players=max_players,
                entry_cost=entry_cost,
                prize_pool=prize_pool,
                award_percentage=DEFAULT_AWARD_PERCENTAGE,
                start_date=start_date,
                end_date=end_date,
                status=REGISTRATION,
                current_round=0,
            )
            self.session.add(t)
            try:
                self.session.flush()
            except IntegrityError:
                # name taken by a concurrent create
                raise DuplicateName()
            return t

        return self._atomic(work)

    # ---------- join ----------
    def join(self, tournament_id, user) -> Tournament:
        user_id = _user_id(user)

        def work():
            t = self._load(tournament_id)
            u = self._load_user(user_id)
            if u.status != 'active':
                raise AccountSuspended()
            if t.status != REGISTRATION:
                raise TournamentNotJoinable()
            if u.id in t.participant_ids():
                raise AlreadyRegistered()
            if t.is_full():
                raise TournamentFull()
            ledger.debit(
                self.session, u, t.entry_cost, 'tournament_entry',
                f'Entry fee for tournament: {t.name}', tournament=t,
            )
            t.players.append(TournamentPlayer(tournament_id=t.id, user_id=u.id, seat=len(t.players)))
            t.updated_at = self.clock()
            if len(t.players) == t.max_players:
                t.set_bracket(brackets.build(t.max_players, t.participant_ids()))
                t.status = ACTIVE
                t.current_round = 1
            return t

        return self._atomic(work)

    # ---------- record match ----------
    def record_match(self, tournament_id, round_number, match_index, winner, actor) -> Tournament:
        _require_admin(actor)
        _int(round_number, 'roundNumber', minimum=1)
        _int(match_index, 'matchIndex')
        _int(winner, 'winnerId')

        def work():
            t = self._load(tournament_id)
            if t.status != ACTIVE:
                raise TournamentNotActive()
            if round_number != t.current_round:
                raise RoundMismatch(
                    f'Round {round_number} requested, current round is {t.current_round}'
                )
            b = t.bracket_data()
            rnd = b.round(round_number)
            if not 0 <= match_index < len(rnd.matches):
                raise MatchNotFound(f'Round {round_number} has no match {match_index}')
            match = rnd.matches[match_index]
            if match.status == brackets.COMPLETED:
                raise MatchAlreadyCompleted()
            if not match.is_resolved or winner not in match.players():
                raise InvalidWinner()

            b = brackets.record_winner(b, round_number, match_index, winner)
            loser = match.player2 if winner == match.player1 else match.player1
            winner_user = self._load_user(winner)
            winner_user.wins = (winner_user.wins or 0) + 1
            loser_user = self.session.get(User, loser)
            if loser_user is not None:
                loser_user.losses = (loser_user.losses or 0) + 1

            rnd = b.round(round_number)
            if rnd.is_complete:
                b = brackets.advance(b, round_number, brackets.round_winners(rnd))
                if b.has_round(round_number + 1):
                    t.current_round = round_number + 1
                else:
                    self._complete(t, winner_user)
            t.set_bracket(b)
            t.updated_at = self.clock()
            return t

        return self._atomic(work)

    def _complete(self, t: Tournament, champion: User):
        t.status = COMPLETED
        t.winner_id = champion.id
        t.completed_at = self.clock()
        if not t.prize_distributed:
            prize = t.prize_amount()
            if prize > 0:
                ledger.credit(
                    self.session, champion, prize, 'tournament_win',
                    f'Tournament prize ({t.award_percentage}%) for winning: {t.name}',
                    tournament=t,
                )
            t.prize_distributed = True

    # ---------- cancel ----------
    def cancel(self, tournament_id, reason=None, actor=None) -> int:
        """Cancel and refund every current participant; returns the refund count."""
        _require_admin(actor)
        if reason is not None and not isinstance(reason, str):
            raise InvalidConfiguration('Reason must be text')

        def work():
            t = self._load(tournament_id)
            if t.is_terminal():
                raise TournamentAlreadyTerminal(f'Tournament is already {t.status}')
            refunded = 0
            for tp in t.players:
                ledger.credit(
                    self.session, tp.user, t.entry_cost, 'tournament_entry',
                    f'Refund for cancelled tournament: {t.name}', tournament=t,
                )
                refunded += 1
            t.status = CANCELLED
            t.cancelled_at = self.clock()
            t.cancellation_reason = (reason or '').strip() or 'Cancelled by admin'
            t.updated_at = self.clock()
            return refunded

        return self._atomic(work)

    # ---------- award percentage ----------
    def update_award_percentage(self, tournament_id, percentage, actor) -> Tournament:
        """Change the champion's share of the prize pool.

        Only allowed during registration; the share is fixed once the
        bracket exists.
        """
        _require_admin(actor)
        _int(percentage, 'percentage', minimum=0, maximum=100)

        def work():
            t = self._load(tournament_id)
            if t.status != REGISTRATION:
                raise AwardLocked()
            t.award_percentage = percentage
            t.updated_at = self.clock()
            return t

        return self._atomic(work)
