import pytest

from conftest import build_engine, make_book
from shelfsync.api.base import NetworkError
from shelfsync.auth import AuthState
from shelfsync.config import SyncConfig
from shelfsync.main import EngineRunner, create_app


@pytest.fixture
def runner(repo, lists, resolver, preferences):
    runner = EngineRunner(SyncConfig(session_cookie="/people/reader", secret_key="test"))
    runner.thread.start()
    runner.engine = runner.call(
        lambda _: build_engine(repo, lists, resolver, preferences, runner.auth)
    )
    yield runner
    runner.shutdown()


@pytest.fixture
def client(runner):
    app = create_app(runner)
    app.config['TESTING'] = True
    return app.test_client()


def load(client):
    response = client.post('/api/shelves/load', json={})
    assert response.status_code == 200
    return response.get_json()


def test_health(client):
    data = client.get('/health').get_json()
    assert data['status'] == 'ok'
    assert data['engine'] is True
    assert data['auth'] == 'authenticated'
    assert 'openlibrary' not in data


def test_health_check_reports_connection(client, repo):
    repo.connected = False
    data = client.get('/health?check=1').get_json()
    assert data['openlibrary'] is False


def test_state_starts_initial(client):
    assert client.get('/api/state').get_json() == {'status': 'initial'}


def test_load_returns_loaded_state(client):
    data = load(client)

    assert data['success'] is True
    assert data['state']['status'] == 'loaded'
    assert [s['key'] for s in data['state']['shelves']] == ['want-to-read', 'currently-reading', 'already-read']


def test_move_book(client, repo):
    load(client)
    response = client.post('/api/books/move', json={
        'book': {'work_id': 'W1', 'edition_id': 'W1-E', 'title': 'Title W1'},
        'target_shelf': 'currently-reading',
    })

    data = response.get_json()
    assert data['success'] is True
    shelves = {s['key']: s for s in data['state']['shelves']}
    assert [b['work_id'] for b in shelves['currently-reading']['books']] == ['W1']
    assert shelves['want-to-read']['books'] == []
    assert repo.count('move_book_to_shelf', 'W1', 'currently-reading') == 1


def test_move_without_work_id_is_rejected(client, repo):
    load(client)
    response = client.post('/api/books/move', json={'book': {'title': 'x'}})

    assert response.status_code == 400
    assert repo.count('move_book_to_shelf') == 0


def test_refresh_book(client, repo):
    load(client)
    repo.book_details['W2'] = make_book('W2', title='Fresh Title')
    response = client.post('/api/books/refresh', json={
        'book': {'work_id': 'W2', 'edition_id': 'W2-E', 'title': 'Title W2'},
        'shelf': 'already-read',
    })

    data = response.get_json()
    assert data['success'] is True
    shelves = {s['key']: s for s in data['state']['shelves']}
    assert [b['title'] for b in shelves['already-read']['books']] == ['Fresh Title', 'Title W3']


def test_refresh_book_failure_keeps_state(client, repo):
    load(client)
    repo.failures['refresh_book'] = NetworkError('offline')
    response = client.post('/api/books/refresh', json={
        'book': {'work_id': 'W2', 'edition_id': 'W2-E'},
        'shelf': 'already-read',
    })

    data = response.get_json()
    assert response.status_code == 200
    assert data['success'] is False
    assert data['state']['status'] == 'loaded'


def test_refresh_book_requires_shelf(client, repo):
    response = client.post('/api/books/refresh', json={'book': {'work_id': 'W2'}})

    assert response.status_code == 400
    assert repo.count('refresh_book') == 0


def test_configure_shelves(client, repo):
    load(client)
    response = client.post('/api/shelves/configure', json={'keys': ['already-read']})

    data = response.get_json()
    assert data['success'] is True
    assert [s['key'] for s in data['state']['shelves']] == ['already-read']
    assert repo.count('update_configured_shelf_keys', ('already-read',)) == 1


def test_configure_shelves_requires_key_list(client, repo):
    response = client.post('/api/shelves/configure', json={'keys': 'already-read'})

    assert response.status_code == 400
    assert repo.count('update_configured_shelf_keys') == 0


def test_visual_adjustment_round_trip(client, preferences):
    load(client)
    saved = client.put('/api/books/W1/adjustment', json={'settings': {'brightness': 1.2}})
    assert saved.get_json()['success'] is True

    data = client.get('/api/books/W1/adjustment').get_json()
    assert data['settings'] == {'brightness': 1.2}
    assert client.get('/api/books/W2/adjustment').status_code == 404


def test_visual_adjustment_for_unshelved_book_is_rejected(client, preferences):
    load(client)
    response = client.put('/api/books/W99/adjustment', json={'settings': {'brightness': 1.2}})

    assert response.status_code == 400
    assert preferences.adjustments == {}


def test_unknown_sort_order_is_rejected(client):
    response = client.post('/api/shelves/want-to-read/sort', json={'order': 'colour'})
    assert response.status_code == 400


def test_if_stale_refresh_of_unknown_shelf_is_404(client):
    load(client)
    response = client.post('/api/shelves/nope/refresh?if_stale=1')
    assert response.status_code == 404


def test_if_stale_refresh_of_fresh_shelf(client):
    load(client)
    data = client.post('/api/shelves/want-to-read/refresh?if_stale=1').get_json()
    assert data['result'] == {'refreshed': False}


def test_logout_clears_state(client, runner):
    load(client)
    response = client.post('/api/auth', json={'state': 'unauthenticated'})
    assert response.get_json() == {'success': True, 'state': 'unauthenticated'}

    runner.call(lambda engine: engine.wait_for_auth_events())
    assert client.get('/api/state').get_json() == {'status': 'initial'}
    assert runner.auth.state == AuthState.UNAUTHENTICATED


def test_unknown_auth_state_is_rejected(client):
    response = client.post('/api/auth', json={'state': 'maybe'})
    assert response.status_code == 400


def test_unconfigured_runner():
    runner = EngineRunner(SyncConfig(secret_key="test"))
    client = create_app(runner).test_client()

    assert client.get('/api/state').get_json() == {'status': 'unconfigured'}
    assert client.post('/api/shelves/load', json={}).status_code == 400
