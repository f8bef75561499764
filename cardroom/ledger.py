"""Coin balances and their append-only transaction log.

The functions here only stage changes on the caller's session. The balance
change and its :class:`~cardroom.models.Transaction` are flushed and
committed together by whoever owns the unit of work, normally
:func:`cardroom.lifecycle.atomic`. ``User.version_id`` makes a write based
on a stale balance fail at flush time instead of double spending.
"""
from __future__ import annotations

from .errors import InsufficientFunds, InvalidAmount, InvalidConfiguration, NotAuthorized
from .models import TRANSACTION_TYPES, Transaction, User


def _check_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f'Amount must be a positive integer, got {amount!r}')
    return amount


def _check_type(txn_type: str) -> str:
    if txn_type not in TRANSACTION_TYPES:
        raise InvalidConfiguration(f'Unknown transaction type {txn_type!r}')
    return txn_type


def _append(session, user: User, delta: int, txn_type: str, reason: str, tournament=None) -> Transaction:
    before = user.coins or 0
    user.coins = before + delta
    txn = Transaction(
        user=user,
        type=txn_type,
        amount=delta,
        description=reason or '',
        balance_before=before,
        balance_after=user.coins,
        tournament=tournament,
    )
    session.add(txn)
    return txn


def debit(session, user: User, amount: int, txn_type: str, reason: str, tournament=None) -> Transaction:
    """Take ``amount`` coins from ``user``; all or nothing."""
    amount = _check_amount(amount)
    _check_type(txn_type)
    if (user.coins or 0) < amount:
        raise InsufficientFunds(f'{user.name} has {user.coins or 0} coins, {amount} required')
    return _append(session, user, -amount, txn_type, reason, tournament)


def credit(session, user: User, amount: int, txn_type: str, reason: str, tournament=None) -> Transaction:
    """Give ``amount`` coins to ``user``."""
    amount = _check_amount(amount)
    _check_type(txn_type)
    return _append(session, user, amount, txn_type, reason, tournament)


def adjust(session, user: User, amount: int, operation: str, actor) -> Transaction:
    """Admin coin management.

    Removal is capped at the current balance, so asking to remove more than
    the player holds empties the balance. Removing from an empty balance is
    refused.
    """
    if not getattr(actor, 'is_admin', False):
        raise NotAuthorized()
    if actor.id == user.id:
        raise NotAuthorized('You cannot manage your own coins')
    amount = _check_amount(amount)
    if operation == 'add':
        return credit(session, user, amount, 'admin_add', f'Admin added {amount} coins')
    if operation == 'remove':
        actual = min(amount, user.coins or 0)
        if actual == 0:
            raise InsufficientFunds(f'{user.name} has no coins to remove')
        return debit(session, user, actual, 'admin_remove', f'Admin removed {actual} coins')
    raise InvalidConfiguration('Operation must be add or remove')


def history(session, user: User):
    return (
        session.query(Transaction)
        .filter_by(user_id=user.id)
        .order_by(Transaction.id)
        .all()
    )
