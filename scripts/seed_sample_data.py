#!/usr/bin/env python
"""Populate the development database with demo players and tournaments."""
from __future__ import annotations

import argparse
from datetime import datetime, timedelta

from flask import current_app

from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cardroom.app import create_app, db
from cardroom import ledger, models
from cardroom.lifecycle import TournamentController


def ensure_admin_user(email: str, password: str) -> models.User:
    admin = models.User.query.filter_by(email=email).first()
    if admin is None:
        admin = models.User(email=email, name="Admin User", is_admin=True)
        admin.set_password(password)
        db.session.add(admin)
        db.session.commit()
    return admin


def create_player(name: str, email: str, admin: models.User, coins: int, password: str = "player123") -> models.User:
    user = models.User.query.filter_by(email=email).first()
    if user is None:
        user = models.User(name=name, email=email)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        ledger.adjust(db.session, user, coins, 'add', admin)
        db.session.commit()
    return user


def ensure_tournament(controller: TournamentController, admin: models.User, name: str,
                      max_players: int, entry_cost: int, prize_pool: int, hours_from_now: int) -> models.Tournament:
    tournament = models.Tournament.query.filter_by(name=name).first()
    if tournament is None:
        tournament = controller.create(
            name=name,
            type='public',
            max_players=max_players,
            entry_cost=entry_cost,
            prize_pool=prize_pool,
            start_date=datetime.utcnow() + timedelta(hours=hours_from_now),
            actor=admin,
        )
    return tournament


def join_all(controller: TournamentController, tournament: models.Tournament, players) -> models.Tournament:
    for player in players:
        if tournament.status != models.REGISTRATION:
            break
        if player.id in tournament.participant_ids():
            continue
        tournament = controller.join(tournament.id, player)
    return tournament


def build_sample_world(reset: bool = False) -> None:
    if reset:
        db.drop_all()
        db.create_all()
    app_config = current_app.config
    admin = ensure_admin_user(app_config['ADMIN_EMAIL'], app_config['ADMIN_PASSWORD'])
    controller = TournamentController(db.session, retries=app_config['CONFLICT_RETRIES'])

    player_details = [
        ("Lena Hart", "lena@example.com"),
        ("Noah Kim", "noah@example.com"),
        ("Eli Turner", "eli@example.com"),
        ("Zara Brooks", "zara@example.com"),
        ("Theo White", "theo@example.com"),
        ("Maya Singh", "maya@example.com"),
        ("Riley Chen", "riley@example.com"),
        ("Sofia Martins", "sofia@example.com"),
        ("Jonah Price", "jonah@example.com"),
        ("Aria Wells", "aria@example.com"),
    ]
    players = [create_player(name, email, admin, coins=1000) for name, email in player_details]

    # full 4-player event with the semi-finals played
    showdown = ensure_tournament(controller, admin, "Friday Showdown", 4, 100, 500, 1)
    showdown = join_all(controller, showdown, players[:4])
    if showdown.status == models.ACTIVE and showdown.current_round == 1:
        for index, match in enumerate(showdown.bracket_data().round(1).matches):
            controller.record_match(showdown.id, 1, index, match.player1, admin)

    # 8-player event still taking registrations
    league = ensure_tournament(controller, admin, "Saturday League", 8, 50, 600, 24)
    join_all(controller, league, players[2:7])

    # cancelled event, refunds applied
    storm = ensure_tournament(controller, admin, "Storm Cup", 4, 75, 300, 48)
    storm = join_all(controller, storm, players[7:9])
    if storm.status == models.REGISTRATION:
        controller.cancel(storm.id, "Venue closed for weather", admin)

    print("Database populated with demo content.")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--reset", action="store_true", help="drop and recreate the database before loading data")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        db.create_all()
        build_sample_world(reset=args.reset)


if __name__ == "__main__":
    main()
