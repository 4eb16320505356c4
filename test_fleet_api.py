# Fleet API Client Tests
# File: test_fleet_api.py

from unittest.mock import MagicMock

import pytest
import requests

from fleet_api import FleetApiClient, FleetApiError, ZoneRegistry

NO_FLY_RECORDS = [
    {'id': 1, 'name': 'Airport', 'geometry': 'POLYGON((0 0, 0 1, 1 1, 1 0, 0 0))'},
    {'id': 2, 'name': 'Broken', 'geometry': 'POLYGON((nope))'},
]
PERMIT_RECORDS = [
    {'id': 10, 'permitNumber': 'P-100',
     'airspaceArea': {'type': 'Polygon', 'coordinates': [[[5, 5], [5, 6], [6, 6], [6, 5], [5, 5]]]}},
]


def make_response(body=None, status=200, content=b'x'):
    response = MagicMock()
    response.json.return_value = body
    response.content = content
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return response


@pytest.fixture
def session():
    s = MagicMock()
    s.headers = {}
    return s


def test_client_sets_auth_header(session):
    FleetApiClient('http://fleet/api/', token='secret', session=session)
    assert session.headers['Authorization'] == 'Bearer secret'


def test_get_drones_unwraps_data(session):
    session.request.return_value = make_response({'data': [{'id': 1}], 'total': 1})
    client = FleetApiClient('http://fleet/api/', session=session)

    assert client.get_drones() == [{'id': 1}]
    session.request.assert_called_once_with('GET', 'http://fleet/api/drones', timeout=5.0, params=None)


def test_record_with_data_field_is_not_unwrapped(session):
    record = {'id': 'M1', 'data': {'notes': 'survey'}}
    session.request.return_value = make_response(record)
    client = FleetApiClient('http://fleet', session=session)

    assert client.get_mission('M1') == record


def test_http_error_raises_fleet_error(session):
    session.request.return_value = make_response(status=500)
    client = FleetApiClient('http://fleet', session=session)

    with pytest.raises(FleetApiError):
        client.get_no_fly_zones()


def test_connection_error_raises_fleet_error(session):
    session.request.side_effect = requests.ConnectionError("refused")
    client = FleetApiClient('http://fleet', session=session)

    with pytest.raises(FleetApiError):
        client.get_mission(5)


def test_list_endpoint_rejects_non_list(session):
    session.request.return_value = make_response({'unexpected': True})
    client = FleetApiClient('http://fleet', session=session)

    with pytest.raises(FleetApiError):
        client.get_flight_permits()


def test_update_mission_patches_json(session):
    session.request.return_value = make_response({'id': 7})
    client = FleetApiClient('http://fleet', session=session)

    assert client.update_mission(7, {'drones': []}) == {'id': 7}
    session.request.assert_called_once_with('PATCH', 'http://fleet/missions/7', timeout=5.0,
                                            json={'drones': []})


def test_empty_body_returns_none(session):
    session.request.return_value = make_response(content=b'')
    assert FleetApiClient('http://fleet', session=session).get_drone(1) is None


# ----------------------------------------------------------------------------
# Zone registry
# ----------------------------------------------------------------------------

def test_registry_starts_empty():
    zones = ZoneRegistry()
    assert zones.no_fly_zones['features'] == []
    assert zones.permit_areas['features'] == []
    assert zones.refresh() is False


def test_load_records_skips_malformed_geometry():
    zones = ZoneRegistry()
    zones.load_records(NO_FLY_RECORDS, PERMIT_RECORDS)

    status = zones.status()
    assert status['no_fly_polygons'] == 1
    assert status['permit_polygons'] == 1
    assert zones.permit_areas['features'][0]['properties'] == {'id': 10, 'name': 'P-100'}


def test_refresh_failure_keeps_previous_snapshot():
    client = MagicMock()
    client.get_no_fly_zones.return_value = NO_FLY_RECORDS
    client.get_flight_permits.return_value = PERMIT_RECORDS
    zones = ZoneRegistry(client)

    assert zones.refresh() is True
    previous = zones.permit_areas

    client.get_flight_permits.side_effect = FleetApiError("timeout")
    assert zones.refresh() is False
    assert zones.permit_areas is previous


def test_refresh_loop_start_stop():
    client = MagicMock()
    client.get_no_fly_zones.return_value = []
    client.get_flight_permits.return_value = []
    zones = ZoneRegistry(client, refresh_seconds=60)

    zones.start()
    zones.stop()

    assert zones.running is False
    assert not zones._thread.is_alive()
