# API Server Tests
# File: test_api_server.py

import base64
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import api_server
from config import ConsoleConfig
from conftest import FakeClock, FakeDecoder
from fleet_api import FleetApiError
from main import OperationsConsole

PERMIT = {'id': 1, 'permitNumber': 'P-1',
          'airspaceArea': 'POLYGON((106.0 10.0, 106.0 10.01, 106.01 10.01, 106.01 10.0, 106.0 10.0))'}
NO_FLY = {'id': 2, 'name': 'Stadium',
          'geometry': 'POLYGON((106.005 10.005, 106.005 10.007, 106.007 10.007, 106.007 10.005, 106.005 10.005))'}
AREA = [[106.001, 10.001], [106.003, 10.001], [106.003, 10.003], [106.001, 10.003]]
CONFLICT_AREA = [[106.004, 10.004], [106.006, 10.004], [106.006, 10.006], [106.004, 10.006]]


@pytest.fixture
def console(monkeypatch):
    c = OperationsConsole(ConsoleConfig(), clock=FakeClock(10000.0), decoder_factory=FakeDecoder)
    c.zones.load_records([NO_FLY], [PERMIT])
    monkeypatch.setattr(api_server, 'console', c)
    return c


@pytest.fixture
def client(console):
    # no context manager: the startup hook would build a console from the environment
    return TestClient(api_server.app)


def test_uninitialized_console_returns_503(monkeypatch):
    monkeypatch.setattr(api_server, 'console', None)
    response = TestClient(api_server.app).get('/api/drones')
    assert response.status_code == 503


def test_root_and_health(client):
    assert client.get('/').json()['name'] == 'Fleet Operations Console API'
    assert client.get('/health').json()['status'] == 'healthy'


def test_ingest_telemetry_and_read_state(client):
    response = client.post('/api/telemetry', json=[
        {'droneId': 'D1', 'lat': 10.0, 'lon': 106.0, 'battery': 90},
        {'droneId': 'D1', 'lat': 10.001, 'lon': 106.001, 'battery': 89},
        {'droneId': 'D2', 'lat': 'bad', 'lon': 106.0},
    ])
    assert response.json() == {'accepted': 2, 'dropped': 1, 'drones': ['D1']}

    drones = client.get('/api/drones').json()
    assert drones['count'] == 1
    assert drones['active'] == ['D1']

    drone = client.get('/api/drones/D1').json()
    assert drone['path'] == [[106.0, 10.0], [106.001, 10.001]]
    assert [s['value'] for s in drone['battery_history']] == [90, 89]

    assert client.get('/api/drones/D9').status_code == 404


def test_status_update(client):
    response = client.post('/api/drones/D1/status', json={'status': 'hovering'})
    assert response.json() == {'drone_id': 'D1', 'status': 'hovering'}

    assert client.post('/api/drones/D1/status', json={'status': 'sleeping'}).status_code == 400


def test_commands_are_queued_without_transport(client, console):
    response = client.post('/api/drones/D1/commands', json={'command': 'takeoff'})
    assert response.json()['queued'] is True

    assert client.post('/api/drones/D1/commands', json={'command': 'warp'}).status_code == 400
    assert client.post('/api/drones/D1/join').json()['queued'] is True
    assert console.channel.pending() == 2


def test_video_lifecycle(client, console):
    started = client.post('/api/drones/D1/video/start').json()
    assert started['drone_id'] == 'D1'
    assert started['decoder_ready'] is True

    frame = base64.b64encode(bytes([0, 0, 0, 1, 0x67, 0x42])).decode()
    assert client.post('/api/video/frames', json={'droneId': 'D1', 'payload': frame}).json() == {'fed': True}
    zeros = base64.b64encode(bytes(10)).decode()
    assert client.post('/api/video/frames', json={'droneId': 'D1', 'payload': zeros}).json() == {'fed': False}

    stats = client.get('/api/drones/D1/video').json()
    assert stats['frames_fed'] == 1
    assert stats['dropped'] == {'all_zero': 1}

    assert client.post('/api/drones/D1/video/stop').json()['stopped'] is True
    assert client.post('/api/drones/D1/video/stop').json()['stopped'] is False
    assert client.get('/api/drones/D1/video').status_code == 404


def test_validate_draft(client):
    response = client.post('/api/missions/drafts/validate', json={
        'ring': AREA,
        'droneId': 'D1',
        'waypoints': [{'seqNumber': 0, 'altitudeM': 150, 'speedMps': 6, 'action': 'Photo'}],
    })
    body = response.json()

    assert body['has_conflict'] is False
    assert body['validation']['valid'] is True
    assert body['waypoints'][0]['altitude_m'] == 150
    assert body['waypoints'][1]['altitude_m'] == 100.0


def test_validate_conflicting_draft(client):
    body = client.post('/api/missions/drafts/validate',
                       json={'ring': CONFLICT_AREA, 'droneId': 'D1'}).json()
    assert body['has_conflict'] is True
    assert body['validation']['valid'] is False


def test_commit_drafts(client, console):
    fleet = MagicMock()
    console.fleet_client = fleet

    response = client.post('/api/missions/drafts/commit', json={
        'mission_id': 'M1',
        'drafts': [{'ring': AREA, 'droneId': 'D1'}],
    })

    assert response.status_code == 200
    assert response.json()['drones'][0]['droneId'] == 'D1'
    fleet.update_mission.assert_called_once()


def test_commit_rejects_conflicts(client):
    response = client.post('/api/missions/drafts/commit', json={
        'drafts': [{'ring': AREA, 'droneId': 'D1'}, {'ring': CONFLICT_AREA, 'droneId': 'D2'}],
    })
    assert response.status_code == 422
    assert response.json()['detail']['drone_id'] == 'D2'


def test_commit_rejects_bad_waypoint_metadata(client):
    response = client.post('/api/missions/drafts/commit', json={
        'drafts': [{'ring': AREA, 'droneId': 'D1',
                    'waypoints': [{'seqNumber': 0, 'altitudeM': 'very high'}]}],
    })
    assert response.status_code == 422
    assert 'altitude' in response.json()['detail']['reason']


def test_commit_fleet_failure_is_bad_gateway(client, console):
    fleet = MagicMock()
    fleet.update_mission.side_effect = FleetApiError("fleet API down")
    console.fleet_client = fleet

    response = client.post('/api/missions/drafts/commit', json={
        'mission_id': 'M1', 'drafts': [{'ring': AREA, 'droneId': 'D1'}],
    })
    assert response.status_code == 502


def test_mission_progress(client):
    mission = {
        'id': 'M1',
        'status': 'in_progress',
        'drones': [{'droneId': 'D1', 'waypoints': [
            {'seqNumber': 0, 'geoPoint': 'POINT(106.0 10.0)'},
            {'seqNumber': 1, 'geoPoint': 'POINT(106.002 10.0)'},
        ]}],
    }
    assert client.post('/api/missions', json=mission).json()['drones'] == {'D1': 2}
    assert client.post('/api/missions', json={'status': 'planned'}).status_code == 400

    client.post('/api/telemetry', json={'droneId': 'D1', 'lat': 10.0, 'lon': 106.002})
    progress = client.get('/api/missions/M1/progress').json()
    assert progress['drones'] == {'D1': 100.0}

    assert client.get('/api/missions/M9/progress').status_code == 404
    assert client.post('/api/missions/M1/start', json={'drone_id': 'D1'}).json()['queued'] is True
    assert client.post('/api/missions/M1/start', json={'drone_id': 'D7'}).status_code == 404


def test_zones(client):
    zones = client.get('/api/zones').json()
    assert zones['status']['permit_polygons'] == 1

    status = client.put('/api/zones', json={'no_fly_zones': [], 'permits': []}).json()
    assert status['permit_polygons'] == 0

    body = client.post('/api/missions/drafts/validate', json={'ring': AREA, 'droneId': 'D1'}).json()
    assert body['no_permit_defined'] is True
    assert body['conflict_reasons'] == ['No permit area defined']


def test_metrics_and_dashboard(client):
    client.post('/api/telemetry', json={'droneId': 'D1', 'lat': 10.0, 'lon': 106.0})

    metrics = client.get('/api/metrics')
    assert metrics.status_code == 200
    assert 'telemetry_ingested_total' in metrics.text

    health = client.get('/api/health').json()
    assert {c['component'] for c in health['checks']} >= {'transport', 'state_store', 'video'}

    assert 'rates' in client.get('/api/dashboard').json()
    assert client.get('/api/console/status').json()['drones'] == 1


def test_websocket_pushes_live_state_and_releases_client(client, console):
    console.store.ingest({'droneId': 'D1', 'lat': 10.0, 'lon': 106.0})

    with client.websocket_connect('/ws') as websocket:
        message = websocket.receive_json()
        assert message['type'] == 'live_state'
        assert 'D1' in message['drones']
        assert client.get('/health').json()['websocket_clients'] == 1

    assert api_server.manager.active_connections == []
    assert client.get('/health').json()['websocket_clients'] == 0
