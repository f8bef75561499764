import csv
import io
import json

from cardroom.models import SiteLog, TournamentLog, User


def login(client, user, password='secret'):
    return client.post('/login', json={'email': user.email, 'password': password})


def new_tournament(client, **overrides):
    payload = {
        'name': 'Weekend Brawl',
        'type': 'public',
        'maxPlayers': 4,
        'entryCost': 100,
        'prizePool': 500,
        'startDate': '2024-06-01T18:00:00Z',
    }
    payload.update(overrides)
    return client.post('/api/tournaments', json=payload)


def test_login_and_logout(client, admin):
    assert client.get('/api/tournaments').status_code == 401
    bad = client.post('/login', json={'email': admin.email, 'password': 'nope'})
    assert bad.status_code == 401
    resp = login(client, admin)
    assert resp.status_code == 200
    assert resp.get_json()['user']['role'] == 'admin'
    assert client.post('/logout').status_code == 200
    assert client.get('/api/tournaments').status_code == 401


def test_suspended_user_cannot_login(client, session, make_player):
    player = make_player()
    player.status = 'suspended'
    session.commit()
    assert login(client, player).status_code == 403


def test_create_tournament_endpoint(client, admin, make_player):
    login(client, admin)
    resp = new_tournament(client)
    assert resp.status_code == 201
    data = resp.get_json()['tournament']
    assert data['status'] == 'registration'
    assert data['startDate'] == '2024-06-01T18:00:00'
    assert data['awardPercentage'] == 80
    assert data['bracket'] is None

    dup = new_tournament(client)
    assert dup.status_code == 409
    assert dup.get_json()['error'] == 'DuplicateName'

    bad = new_tournament(client, name='Stringly', entryCost='100')
    assert bad.status_code == 400
    assert bad.get_json()['error'] == 'InvalidConfiguration'
    bad_date = new_tournament(client, name='Dated', startDate='next tuesday')
    assert bad_date.status_code == 400


def test_players_cannot_create(client, make_player):
    player = make_player()
    login(client, player)
    resp = new_tournament(client)
    assert resp.status_code == 403
    assert resp.get_json()['error'] == 'NotAuthorized'


def test_full_tournament_flow_over_http(client, admin, make_player):
    login(client, admin)
    tid = new_tournament(client).get_json()['tournament']['id']
    players = [make_player(coins=150) for _ in range(4)]
    player_ids = [p.id for p in players]
    admin_id = admin.id

    for p in players:
        login(client, p)
        resp = client.post(f'/api/tournaments/{tid}/join')
        assert resp.status_code == 200
        assert resp.get_json()['coins'] == 50
    again = client.post(f'/api/tournaments/{tid}/join')
    assert again.status_code == 400
    assert again.get_json()['error'] == 'TournamentNotJoinable'

    detail = client.get(f'/api/tournaments/{tid}').get_json()['tournament']
    assert detail['status'] == 'active'
    assert detail['currentRound'] == 1
    assert detail['participants'] == player_ids
    assert len(detail['bracket']['rounds']) == 2

    roster = client.get(f'/api/tournaments/{tid}/players').get_json()
    assert roster['totalPlayers'] == 4
    assert roster['maxPlayers'] == 4

    # players cannot report results
    denied = client.post(f'/api/tournaments/{tid}/matches',
                         json={'roundNumber': 1, 'matchIndex': 0, 'winnerId': player_ids[3]})
    assert denied.status_code == 403

    login(client, admin)
    mismatch = client.post(f'/api/tournaments/{tid}/matches',
                           json={'roundNumber': 2, 'matchIndex': 0, 'winnerId': player_ids[0]})
    assert mismatch.status_code == 400
    assert mismatch.get_json()['error'] == 'RoundMismatch'

    for index, winner in ((0, player_ids[1]), (1, player_ids[3])):
        resp = client.post(f'/api/tournaments/{tid}/matches',
                           json={'roundNumber': 1, 'matchIndex': index, 'winnerId': winner})
        assert resp.status_code == 200
    final = client.post(f'/api/tournaments/{tid}/matches',
                        json={'roundNumber': 2, 'matchIndex': 0, 'winnerId': player_ids[3]})
    body = final.get_json()['tournament']
    assert body['status'] == 'completed'
    assert body['winnerId'] == player_ids[3]
    assert body['prizeDistributed'] is True

    history = client.get(f'/api/users/{player_ids[3]}/transactions').get_json()
    assert history['coins'] == 50 + 400
    assert [t['type'] for t in history['transactions']] == ['tournament_entry', 'tournament_win']

    logs = client.get(f'/api/tournaments/{tid}/logs').get_json()['logs']
    actions = {(l['action'], l['result']) for l in logs}
    assert ('join', 'success') in actions
    assert ('activate', 'success') in actions
    assert ('complete', 'success') in actions
    assert ('report', 'failure') in actions
    assert admin_id in {l['userId'] for l in logs}


def test_cancel_endpoint_refunds(client, session, admin, make_player):
    login(client, admin)
    tid = new_tournament(client).get_json()['tournament']['id']
    joined = [make_player(coins=100) for _ in range(2)]
    for p in joined:
        login(client, p)
        client.post(f'/api/tournaments/{tid}/join')
    login(client, admin)
    resp = client.post(f'/api/tournaments/{tid}/cancel', json={'reason': 'storm'})
    assert resp.status_code == 200
    assert resp.get_json()['refundedCount'] == 2
    for p in joined:
        assert session.get(User, p.id).coins == 100
    again = client.post(f'/api/tournaments/{tid}/cancel', json={'reason': 'storm'})
    assert again.status_code == 400
    assert again.get_json()['error'] == 'TournamentAlreadyTerminal'
    missing = client.post('/api/tournaments/9999/cancel', json={})
    assert missing.status_code == 404


def test_award_percentage_endpoint(client, admin):
    login(client, admin)
    tid = new_tournament(client).get_json()['tournament']['id']
    resp = client.post(f'/api/tournaments/{tid}/award-percentage', json={'percentage': 60})
    assert resp.get_json()['tournament']['awardPercentage'] == 60
    bad = client.post(f'/api/tournaments/{tid}/award-percentage', json={'percentage': 60.5})
    assert bad.status_code == 400


def test_list_and_export(client, admin, make_player):
    login(client, admin)
    new_tournament(client, name='Alpha')
    beta = new_tournament(client, name='Beta').get_json()['tournament']['id']
    client.post(f'/api/tournaments/{beta}/cancel', json={'reason': 'test'})

    listed = client.get('/api/tournaments?status=cancelled').get_json()['tournaments']
    assert [t['name'] for t in listed] == ['Beta']

    resp = client.get('/api/tournaments/export?format=csv')
    assert resp.mimetype == 'text/csv'
    rows = list(csv.reader(io.StringIO(resp.get_data(as_text=True))))
    assert rows[0][:3] == ['ID', 'Name', 'Type']
    assert {r[1] for r in rows[1:]} == {'Alpha', 'Beta'}

    resp = client.get('/api/tournaments/export?format=json&status=registration')
    data = json.loads(resp.get_data(as_text=True))
    assert [t['name'] for t in data['tournaments']] == ['Alpha']

    player = make_player()
    login(client, player)
    assert client.get('/api/tournaments/export').status_code == 403


def test_coin_adjustment_endpoint(client, session, admin, make_player):
    player = make_player(coins=10)
    login(client, admin)
    resp = client.patch(f'/api/users/{player.id}/coins', json={'amount': 15, 'operation': 'add'})
    assert resp.status_code == 200
    assert resp.get_json()['user']['coins'] == 25
    resp = client.patch(f'/api/users/{player.id}/coins', json={'amount': 100, 'operation': 'remove'})
    assert resp.get_json()['user']['coins'] == 0
    bad = client.patch(f'/api/users/{player.id}/coins', json={'amount': -1, 'operation': 'add'})
    assert bad.status_code == 400
    own = client.patch(f'/api/users/{admin.id}/coins', json={'amount': 5, 'operation': 'add'})
    assert own.status_code == 403
    missing = client.patch('/api/users/9999/coins', json={'amount': 5, 'operation': 'add'})
    assert missing.status_code == 404

    login(client, player)
    assert client.get(f'/api/users/{admin.id}/transactions').status_code == 403
    mine = client.get(f'/api/users/{player.id}/transactions').get_json()
    assert [t['type'] for t in mine['transactions']] == ['admin_add', 'admin_remove']
    denied = session.query(SiteLog).filter_by(action='unauthorized_access').all()
    assert sorted(l.error for l in denied) == [f'/api/users/{admin.id}/coins', f'/api/users/{admin.id}/transactions']


def test_failed_join_is_logged(client, admin, make_player):
    login(client, admin)
    tid = new_tournament(client).get_json()['tournament']['id']
    broke = make_player(coins=0)
    login(client, broke)
    resp = client.post(f'/api/tournaments/{tid}/join')
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'InsufficientFunds'
    login(client, admin)
    logs = client.get(f'/api/tournaments/{tid}/logs').get_json()['logs']
    assert any(l['action'] == 'join' and l['error'] == 'InsufficientFunds' for l in logs)
    assert TournamentLog.query.filter_by(tournament_id=tid, action='create').count() == 1


def test_admin_routes_log_unauthorized_players(client, session, admin, make_player):
    login(client, admin)
    tid = new_tournament(client).get_json()['tournament']['id']
    player = make_player()
    login(client, player)
    attempts = [
        (f'/api/tournaments/{tid}/matches', {'roundNumber': 1, 'matchIndex': 0, 'winnerId': player.id}),
        (f'/api/tournaments/{tid}/cancel', {'reason': 'mine now'}),
        (f'/api/tournaments/{tid}/award-percentage', {'percentage': 100}),
    ]
    for path, body in attempts:
        resp = client.post(path, json=body)
        assert resp.status_code == 403
        assert resp.get_json()['error'] == 'NotAuthorized'
    denied = session.query(SiteLog).filter_by(action='unauthorized_access', user_id=player.id).order_by(SiteLog.id).all()
    assert [l.error for l in denied] == [path for path, _ in attempts]
    assert session.query(SiteLog).filter_by(action='unauthorized_access').count() == 3
