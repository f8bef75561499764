from flask import (
    Flask,
    request,
    Response,
)
from flask_sqlalchemy import SQLAlchemy
from flask_login import (
    LoginManager,
    login_user,
    logout_user,
    login_required,
    current_user,
)
from datetime import datetime, timezone
import os
import io
import csv
import json
import click

from .errors import InvalidConfiguration


db = SQLAlchemy()
login_manager = LoginManager()


def parse_iso_datetime(value, field='date'):
    """Parse an ISO 8601 string into a naive UTC datetime."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidConfiguration(f'{field} must be an ISO 8601 string')
    value = value.strip()
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise InvalidConfiguration(f'Invalid date format for {field}')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def create_app():
    app = Flask(__name__)
    db_file = os.environ.get('CARDROOM_DB_PATH', 'cardroom.db')
    log_db_file = os.environ.get('CARDROOM_LOG_DB_PATH', db_file.replace('.db', '_logs.db'))
    os.makedirs(app.instance_path, exist_ok=True)
    app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{db_file}'
    app.config['SQLALCHEMY_BINDS'] = {
        'logs': f'sqlite:///{log_db_file}',
    }
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = os.environ.get('FLASK_SECRET', 'dev-secret-change-me')
    app.config['CONFLICT_RETRIES'] = int(os.environ.get('CARDROOM_CONFLICT_RETRIES', 3))
    app.config['ADMIN_EMAIL'] = os.environ.get('CARDROOM_ADMIN_EMAIL', 'admin@example.com')
    app.config['ADMIN_PASSWORD'] = os.environ.get('CARDROOM_ADMIN_PASSWORD', 'admin123')

    db.init_app(app)
    login_manager.init_app(app)

    from .models import (
        User,
        Tournament,
        SiteLog,
        TournamentLog,
        TOURNAMENT_STATUSES,
    )
    from .errors import CardroomError, NotAuthorized, UserNotFound
    from .lifecycle import TournamentController, atomic
    from . import ledger

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return {'success': False, 'error': 'NotAuthenticated', 'message': 'Login required'}, 401

    @app.errorhandler(CardroomError)
    def handle_cardroom_error(err):
        if isinstance(err, NotAuthorized):
            log_site('unauthorized_access', 'failure', request.path)
        return err.to_dict(), err.status_code

    # ---------- CLI ----------
    @app.cli.command('db-init')
    def db_init():
        db.create_all()
        # Ensure a default admin account exists for first-time login
        email = app.config['ADMIN_EMAIL']
        if not db.session.query(User).filter_by(email=email).first():
            u = User(email=email, name="Admin", is_admin=True)
            u.set_password(app.config['ADMIN_PASSWORD'])
            db.session.add(u)
            db.session.commit()
            print(f"Created default admin: {email}")
        print("Database initialized.")

    @app.cli.command('create-admin')
    @click.option('--email', help='Email for the admin user')
    @click.option('--password', help='Password for the admin user')
    def create_admin(email, password):
        if not email:
            email = click.prompt("Admin email", default="admin@example.com")
        if not password:
            password = click.prompt("Password", hide_input=True, confirmation_prompt=True)
        if db.session.query(User).filter_by(email=email).first():
            print("User exists")
            return
        u = User(email=email, name="Admin", is_admin=True)
        u.set_password(password)
        db.session.add(u)
        db.session.commit()
        print("Admin created.")

    # ---------- Helpers ----------
    def controller():
        return TournamentController(db.session, retries=app.config['CONFLICT_RETRIES'])

    def json_body():
        payload = request.get_json(silent=True)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise InvalidConfiguration('Request body must be a JSON object')
        return payload

    def require_admin():
        if not current_user.is_authenticated or not current_user.is_admin:
            raise NotAuthorized()

    def log_site(action, result, error=None):
        log = SiteLog(action=action, result=result, error=error,
                      user_id=current_user.id if current_user.is_authenticated else None)
        db.session.add(log)
        db.session.commit()

    def log_tournament(tid, action, result, error=None):
        log = TournamentLog(tournament_id=tid, action=action, result=result, error=error,
                            user_id=current_user.id if current_user.is_authenticated else None)
        db.session.add(log)
        db.session.commit()

    # ---------- Auth ----------
    @app.route('/login', methods=['POST'])
    def login():
        data = json_body()
        email = (data.get('email') or '').strip().lower()
        user = db.session.query(User).filter_by(email=email).first()
        if not user or not user.check_password(data.get('password') or ''):
            log_site('login', 'failure', 'invalid credentials')
            return {'success': False, 'error': 'InvalidCredentials', 'message': 'Invalid credentials'}, 401
        if not login_user(user):
            log_site('login', 'failure', 'suspended')
            return {'success': False, 'error': 'AccountSuspended', 'message': 'Account is suspended'}, 403
        log_site('login', 'success')
        return {'success': True, 'user': user.to_dict()}

    @app.route('/logout', methods=['POST'])
    @login_required
    def logout():
        log_site('logout', 'success')
        logout_user()
        return {'success': True}

    # ---------- Tournaments ----------
    @app.route('/api/tournaments')
    @login_required
    def list_tournaments():
        status = request.args.get('status') or None
        tournaments = controller().list(status)
        return {'success': True, 'tournaments': [t.to_dict(include_bracket=False) for t in tournaments]}

    @app.route('/api/tournaments/export')
    @login_required
    def export_tournaments():
        require_admin()
        fmt = request.args.get('format', 'csv')
        status = request.args.get('status') or None
        if status and status not in TOURNAMENT_STATUSES:
            raise InvalidConfiguration(f'Unknown status {status!r}')
        q = db.session.query(Tournament)
        if status:
            q = q.filter_by(status=status)
        tournaments = q.order_by(Tournament.created_at.desc(), Tournament.id.desc()).all()
        stamp = datetime.utcnow().strftime('%Y-%m-%d')
        log_site('tournament_export', 'success', fmt)
        if fmt == 'json':
            rows = []
            for t in tournaments:
                row = t.to_dict(include_bracket=False)
                row['players'] = [{'id': tp.user.id, 'name': tp.user.name, 'email': tp.user.email}
                                  for tp in t.players]
                row['winnerName'] = t.winner.name if t.winner else None
                rows.append(row)
            return Response(
                json.dumps({'tournaments': rows}),
                mimetype='application/json',
                headers={'Content-Disposition': f'attachment; filename=tournaments_{stamp}.json'},
            )
        if fmt != 'csv':
            raise InvalidConfiguration('Format must be csv or json')
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            'ID',
            'Name',
            'Type',
            'Max Players',
            'Entry Cost',
            'Prize Pool',
            'Award Percentage',
            'Start Date',
            'Status',
            'Participant Count',
            'Participants',
            'Current Round',
            'Winner',
            'Completed At',
            'Cancelled At',
            'Cancellation Reason',
            'Created At',
        ])
        for t in tournaments:
            writer.writerow([
                t.id,
                t.name,
                t.type,
                t.max_players,
                t.entry_cost,
                t.prize_pool,
                t.award_percentage,
                t.start_date.isoformat() if t.start_date else '',
                t.status,
                len(t.players),
                '; '.join(f'{tp.user.name} ({tp.user.email})' for tp in t.players) or 'None',
                t.current_round,
                t.winner.name if t.winner else '',
                t.completed_at.isoformat() if t.completed_at else '',
                t.cancelled_at.isoformat() if t.cancelled_at else '',
                (t.cancellation_reason or '').replace('\n', ' ').strip(),
                t.created_at.isoformat() if t.created_at else '',
            ])
        output.seek(0)
        return Response(
            output.getvalue(),
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename=tournaments_{stamp}.csv'},
        )

    @app.route('/api/tournaments/<int:tid>')
    @login_required
    def view_tournament(tid):
        t = controller().get(tid)
        return {'success': True, 'tournament': t.to_dict()}

    @app.route('/api/tournaments/<int:tid>/players')
    @login_required
    def tournament_players(tid):
        c = controller()
        t = c.get(tid)
        players = [u.to_dict() for u in c.players(tid)]
        return {'success': True, 'players': players, 'totalPlayers': len(players),
                'maxPlayers': t.max_players}

    @app.route('/api/tournaments', methods=['POST'])
    @login_required
    def new_tournament():
        data = json_body()
        try:
            t = controller().create(
                name=data.get('name'),
                type=data.get('type'),
                max_players=data.get('maxPlayers'),
                entry_cost=data.get('entryCost'),
                prize_pool=data.get('prizePool'),
                start_date=parse_iso_datetime(data.get('startDate'), 'startDate'),
                end_date=parse_iso_datetime(data.get('endDate'), 'endDate'),
                description=data.get('description') or '',
                actor=current_user,
            )
        except CardroomError as e:
            log_site('tournament_create', 'failure', e.kind)
            raise
        log_site('tournament_create', 'success')
        log_tournament(t.id, 'create', 'success')
        return {'success': True, 'tournament': t.to_dict()}, 201

    @app.route('/api/tournaments/<int:tid>/join', methods=['POST'])
    @login_required
    def join_tournament(tid):
        try:
            t = controller().join(tid, current_user.id)
        except CardroomError as e:
            log_tournament(tid, 'join', 'failure', e.kind)
            log_site('join_tournament', 'failure', e.kind)
            raise
        log_tournament(tid, 'join', 'success')
        log_site('join_tournament', 'success')
        if t.current_round == 1 and t.status == 'active':
            log_tournament(tid, 'activate', 'success', f'players={t.max_players}')
        return {'success': True, 'tournament': t.to_dict(), 'coins': current_user.coins}

    @app.route('/api/tournaments/<int:tid>/matches', methods=['POST'])
    @login_required
    def record_match(tid):
        data = json_body()
        try:
            t = controller().record_match(
                tid,
                data.get('roundNumber'),
                data.get('matchIndex'),
                data.get('winnerId'),
                actor=current_user,
            )
        except CardroomError as e:
            log_tournament(tid, 'report', 'failure', e.kind)
            raise
        log_tournament(tid, 'report', 'success',
                       f"round={data.get('roundNumber')} match={data.get('matchIndex')}")
        if t.status == 'completed':
            log_tournament(tid, 'complete', 'success', f'winner={t.winner_id}')
        return {'success': True, 'tournament': t.to_dict()}

    @app.route('/api/tournaments/<int:tid>/award-percentage', methods=['POST'])
    @login_required
    def update_award_percentage(tid):
        data = json_body()
        try:
            t = controller().update_award_percentage(tid, data.get('percentage'), actor=current_user)
        except CardroomError as e:
            log_tournament(tid, 'award_percentage', 'failure', e.kind)
            raise
        log_tournament(tid, 'award_percentage', 'success', str(t.award_percentage))
        return {'success': True, 'message': f'Award percentage updated to {t.award_percentage}%',
                'tournament': {'id': t.id, 'awardPercentage': t.award_percentage}}

    @app.route('/api/tournaments/<int:tid>/cancel', methods=['POST'])
    @login_required
    def cancel_tournament(tid):
        data = json_body()
        try:
            refunded = controller().cancel(tid, data.get('reason'), actor=current_user)
        except CardroomError as e:
            log_tournament(tid, 'cancel', 'failure', e.kind)
            raise
        log_tournament(tid, 'cancel', 'success', f'refunded={refunded}')
        log_site('cancel_tournament', 'success', f'id={tid}')
        return {'success': True,
                'message': 'Tournament cancelled. All participants have been refunded.',
                'refundedCount': refunded}

    @app.route('/api/tournaments/<int:tid>/logs')
    @login_required
    def tournament_logs(tid):
        require_admin()
        controller().get(tid)
        log_tournament(tid, 'view_logs', 'success')
        logs = (
            db.session.query(TournamentLog)
            .filter_by(tournament_id=tid)
            .order_by(TournamentLog.timestamp.desc(), TournamentLog.id.desc())
            .all()
        )
        return {'success': True, 'logs': [l.to_dict() for l in logs]}

    # ---------- Ledger ----------
    @app.route('/api/users/<int:uid>/coins', methods=['PATCH'])
    @login_required
    def update_coins(uid):
        data = json_body()
        amount = data.get('amount')
        operation = data.get('operation')

        def work():
            user = db.session.get(User, uid)
            if user is None:
                raise UserNotFound()
            ledger.adjust(db.session, user, amount, operation, current_user)
            return user

        try:
            user = atomic(db.session, work, app.config['CONFLICT_RETRIES'])
        except CardroomError as e:
            log_site('update_coins', 'failure', e.kind)
            raise
        log_site('update_coins', 'success', f'user_id={uid} {operation}={amount}')
        return {'success': True,
                'message': f"Coins {'added' if operation == 'add' else 'removed'} successfully",
                'user': user.to_dict()}

    @app.route('/api/users/<int:uid>/transactions')
    @login_required
    def user_transactions(uid):
        if current_user.id != uid and not current_user.is_admin:
            raise NotAuthorized()
        user = db.session.get(User, uid)
        if user is None:
            raise UserNotFound()
        txns = ledger.history(db.session, user)
        return {'success': True, 'coins': user.coins,
                'transactions': [t.to_dict() for t in txns]}

    return app
