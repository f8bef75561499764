"""Caller-facing errors raised by the tournament core.

Every error carries the HTTP status the JSON layer answers with and a
``kind`` string that is reported verbatim to API clients.
"""


class CardroomError(Exception):
    status_code = 400
    default_message = 'Request failed'

    def __init__(self, message=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    @property
    def kind(self):
        return type(self).__name__

    def to_dict(self):
        return {'success': False, 'error': self.kind, 'message': self.message}


# --- validation ---

class InvalidConfiguration(CardroomError):
    default_message = 'Invalid tournament configuration'


class InvalidAmount(InvalidConfiguration):
    default_message = 'Amount must be a positive integer'


class DuplicateName(CardroomError):
    status_code = 409
    default_message = 'Tournament with this name already exists'


class NotAuthorized(CardroomError):
    status_code = 403
    default_message = 'Admin access required'


# --- lookups ---

class TournamentNotFound(CardroomError):
    status_code = 404
    default_message = 'Tournament not found'


class UserNotFound(CardroomError):
    status_code = 404
    default_message = 'User not found'


class MatchNotFound(CardroomError):
    status_code = 404
    default_message = 'Match not found'


# --- state machine ---

class TournamentNotJoinable(CardroomError):
    default_message = 'Tournament is not accepting registrations'


class AlreadyRegistered(CardroomError):
    default_message = 'You are already registered for this tournament'


class TournamentFull(CardroomError):
    default_message = 'Tournament is full'


class AccountSuspended(CardroomError):
    status_code = 403
    default_message = 'Account is suspended'


class TournamentNotActive(CardroomError):
    default_message = 'Tournament is not active'


class RoundMismatch(CardroomError):
    default_message = 'Results must be recorded for the current round'


class MatchAlreadyCompleted(CardroomError):
    default_message = 'Match is already finalized'


class InvalidWinner(CardroomError):
    default_message = 'Winner must be one of the match players'


class TournamentAlreadyTerminal(CardroomError):
    default_message = 'Tournament is already completed or cancelled'


class AwardLocked(CardroomError):
    default_message = 'Award percentage can only change during registration'


# --- ledger ---

class InsufficientFunds(CardroomError):
    default_message = 'Insufficient coins'


# --- bracket ---

class InvalidBracketSize(InvalidConfiguration):
    default_message = 'Tournament must have 4 or 8 players'


class ParticipantCountMismatch(InvalidConfiguration):
    default_message = 'Participant count does not match bracket size'


class InvalidWinnerAssignment(CardroomError):
    default_message = 'Winners do not match the round being completed'


# --- concurrency ---

class ConcurrentModification(CardroomError):
    status_code = 409
    default_message = 'Tournament was modified concurrently, please retry'
