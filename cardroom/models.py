from .app import db
from flask_login import UserMixin
from datetime import datetime
from sqlalchemy import CheckConstraint, UniqueConstraint, event
import os
import hashlib
import json

from . import bracket as brackets

TOURNAMENT_TYPES = ('public', 'private')
BRACKET_SIZES = (4, 8)

REGISTRATION = 'registration'
ACTIVE = 'active'
COMPLETED = 'completed'
CANCELLED = 'cancelled'
TOURNAMENT_STATUSES = (REGISTRATION, ACTIVE, COMPLETED, CANCELLED)
TERMINAL_STATUSES = (COMPLETED, CANCELLED)

DEFAULT_AWARD_PERCENTAGE = 80

TRANSACTION_TYPES = (
    'match_entry',
    'match_win',
    'tournament_entry',
    'tournament_win',
    'coin_purchase',
    'admin_add',
    'admin_remove',
)

USER_STATUSES = ('active', 'suspended')


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(255), nullable=False)
    password_hash = db.Column(db.Text, nullable=True)
    salt = db.Column(db.String(32), nullable=True)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    status = db.Column(db.String(20), default='active', nullable=False)
    # Balance is only ever changed through cardroom.ledger
    coins = db.Column(db.Integer, default=0, nullable=False)
    wins = db.Column(db.Integer, default=0, nullable=False)
    losses = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    version_id = db.Column(db.Integer, nullable=False)

    __table_args__ = (
        CheckConstraint('coins >= 0', name='ck_user_coins_non_negative'),
        CheckConstraint('wins >= 0 AND losses >= 0', name='ck_user_stats_non_negative'),
    )
    __mapper_args__ = {'version_id_col': version_id}

    @property
    def is_active(self):
        return self.status == 'active'

    def set_password(self, pw):
        self.salt = os.urandom(16).hex()
        self.password_hash = hashlib.sha256((self.salt + pw).encode()).hexdigest()

    def check_password(self, pw):
        if not self.password_hash or not self.salt:
            return False
        return self.password_hash == hashlib.sha256((self.salt + pw).encode()).hexdigest()

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': 'admin' if self.is_admin else 'player',
            'status': self.status,
            'coins': self.coins,
            'wins': self.wins,
            'losses': self.losses,
            'createdAt': _iso(self.created_at),
        }


class Tournament(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text, default='')
    type = db.Column(db.String(10), nullable=False)  # public or private
    max_players = db.Column(db.Integer, nullable=False)
    entry_cost = db.Column(db.Integer, nullable=False)
    prize_pool = db.Column(db.Integer, nullable=False)
    award_percentage = db.Column(db.Integer, nullable=False, default=DEFAULT_AWARD_PERCENTAGE)
    start_date = db.Column(db.DateTime, nullable=True)
    end_date = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=REGISTRATION)
    # Serialized cardroom.bracket.Bracket, absent until the tournament fills
    bracket_json = db.Column(db.Text, nullable=True)
    current_round = db.Column(db.Integer, nullable=False, default=0)
    winner_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    prize_distributed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    version_id = db.Column(db.Integer, nullable=False)

    winner = db.relationship('User', foreign_keys=[winner_id])

    __table_args__ = (
        CheckConstraint('max_players IN (4, 8)', name='ck_tournament_max_players'),
        CheckConstraint('entry_cost > 0', name='ck_tournament_entry_cost'),
        CheckConstraint('prize_pool > 0', name='ck_tournament_prize_pool'),
        CheckConstraint('award_percentage BETWEEN 0 AND 100', name='ck_tournament_award_percentage'),
        CheckConstraint("type IN ('public', 'private')", name='ck_tournament_type'),
        CheckConstraint(
            "status IN ('registration', 'active', 'completed', 'cancelled')",
            name='ck_tournament_status',
        ),
    )
    __mapper_args__ = {'version_id_col': version_id}

    def participant_ids(self):
        """Return participant user IDs in join order."""
        return [tp.user_id for tp in self.players]

    def is_full(self):
        return len(self.players) >= self.max_players

    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def bracket_data(self):
        if not self.bracket_json:
            return None
        return brackets.Bracket.from_dict(json.loads(self.bracket_json))

    def set_bracket(self, value):
        self.bracket_json = json.dumps(value.to_dict()) if value is not None else None

    def prize_amount(self):
        return self.prize_pool * self.award_percentage // 100

    def to_dict(self, include_bracket=True):
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description or '',
            'type': self.type,
            'maxPlayers': self.max_players,
            'entryCost': self.entry_cost,
            'prizePool': self.prize_pool,
            'awardPercentage': self.award_percentage,
            'startDate': _iso(self.start_date),
            'endDate': _iso(self.end_date),
            'status': self.status,
            'participants': self.participant_ids(),
            'participantCount': len(self.players),
            'currentRound': self.current_round,
            'winnerId': self.winner_id,
            'prizeDistributed': self.prize_distributed,
            'completedAt': _iso(self.completed_at),
            'cancelledAt': _iso(self.cancelled_at),
            'cancellationReason': self.cancellation_reason,
            'createdAt': _iso(self.created_at),
        }
        if include_bracket:
            b = self.bracket_data()
            data['bracket'] = b.to_dict() if b else None
        return data


class TournamentPlayer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    # Join order, which is also the bracket seeding order
    seat = db.Column(db.Integer, nullable=False)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('players', cascade='all, delete-orphan', order_by='TournamentPlayer.seat')
    )
    user = db.relationship(
        'User',
        backref=db.backref('tournament_entries', cascade='all, delete-orphan')
    )

    __table_args__ = (
        UniqueConstraint('tournament_id', 'user_id', name='_tournament_user_uc'),
        UniqueConstraint('tournament_id', 'seat', name='_tournament_seat_uc'),
        CheckConstraint('seat >= 0', name='ck_tournament_player_seat'),
    )


class Transaction(db.Model):
    __tablename__ = 'coin_transaction'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    type = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Integer, nullable=False)  # signed
    description = db.Column(db.Text, nullable=False, default='')
    balance_before = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User')
    tournament = db.relationship('Tournament')

    __table_args__ = (
        CheckConstraint('balance_after = balance_before + amount', name='ck_transaction_balance'),
        CheckConstraint('balance_after >= 0', name='ck_transaction_balance_after'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'type': self.type,
            'amount': self.amount,
            'description': self.description,
            'balanceBefore': self.balance_before,
            'balanceAfter': self.balance_after,
            'tournamentId': self.tournament_id,
            'createdAt': _iso(self.created_at),
        }


@event.listens_for(Transaction, 'before_update')
@event.listens_for(Transaction, 'before_delete')
def _transactions_are_append_only(mapper, connection, target):
    raise RuntimeError('Transactions are append-only')


class SiteLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    user_id = db.Column(db.Integer, nullable=True)
    # relationship loaded manually to avoid cross-db foreign key


class TournamentLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    user_id = db.Column(db.Integer, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'tournamentId': self.tournament_id,
            'action': self.action,
            'result': self.result,
            'error': self.error,
            'userId': self.user_id,
            'timestamp': _iso(self.timestamp),
        }
