# Operations Console Tests
# File: test_main.py

from unittest.mock import MagicMock

import pytest

import config
from conftest import FakeClock, FakeDecoder
from config import ConsoleConfig
from fleet_api import FleetApiError
from geofence_validator import MissionValidationError
from main import CLI, OperationsConsole

PERMIT_RECORDS = [{
    'id': 1, 'permitNumber': 'P-1',
    'airspaceArea': 'POLYGON((106.0 10.0, 106.0 10.01, 106.01 10.01, 106.01 10.0, 106.0 10.0))',
}]
NO_FLY_RECORDS = [{
    'id': 2, 'name': 'Stadium',
    'geometry': 'POLYGON((106.005 10.005, 106.005 10.007, 106.007 10.007, 106.007 10.005, 106.005 10.005))',
}]
AREA = [[106.001, 10.001], [106.003, 10.001], [106.003, 10.003], [106.001, 10.003]]

MISSION_RECORD = {
    'id': 'M1',
    'status': 'in_progress',
    'drones': [{'droneId': 'D1', 'waypoints': [
        {'seqNumber': 0, 'geoPoint': 'POINT(106.001 10.001)'},
        {'seqNumber': 1, 'geoPoint': 'POINT(106.003 10.001)'},
    ]}],
}


@pytest.fixture
def clock():
    return FakeClock(10000.0)


@pytest.fixture
def console(clock):
    c = OperationsConsole(ConsoleConfig(), clock=clock, decoder_factory=FakeDecoder)
    c.zones.load_records(NO_FLY_RECORDS, PERMIT_RECORDS)
    return c


def test_transport_events_update_live_state(console):
    console.channel.dispatch(config.SUBJECT_TELEMETRY, {'droneId': 'D1', 'lat': 10.0, 'lon': 106.0})
    console.channel.dispatch(config.SUBJECT_STATUS, {'droneId': 'D1', 'status': 'flying'})

    state = console.store.get('D1')
    assert state.position == (106.0, 10.0)
    assert state.status.value == 'flying'
    assert console.get_status()['active_drones'] == 1


def test_start_and_stop_without_collaborators(console):
    console.start(with_monitoring=False)
    console.store.ingest({'droneId': 'D1', 'lat': 10.0, 'lon': 106.0})
    console.start_video('D1')

    status = console.get_status()
    assert status['status'] == 'running'
    assert status['transport'] == 'disconnected'
    assert status['video_streams'] == ['D1']

    console.stop()
    assert console.status == 'stopped'
    assert len(console.store) == 0
    assert console.video.active_streams() == []


def test_start_loads_roster_and_zones(clock):
    fleet = MagicMock()
    fleet.get_drones.return_value = [{'id': 'D5', 'name': 'Kite', 'status': 'available'}]
    fleet.get_no_fly_zones.return_value = NO_FLY_RECORDS
    fleet.get_flight_permits.return_value = PERMIT_RECORDS
    console = OperationsConsole(ConsoleConfig(zone_refresh_seconds=60), clock=clock,
                                decoder_factory=FakeDecoder, fleet_client=fleet)

    console.start(with_monitoring=False)
    try:
        assert console.store.get('D5').name == 'Kite'
        assert console.zones.status()['permit_polygons'] == 1
    finally:
        console.stop()


def test_roster_failure_is_not_fatal(clock):
    fleet = MagicMock()
    fleet.get_drones.side_effect = FleetApiError("down")
    console = OperationsConsole(clock=clock, decoder_factory=FakeDecoder, fleet_client=fleet)
    assert console.load_roster() == 0


def test_validate_and_commit(console):
    draft = console.validate_draft(AREA, drone_id='D1')
    assert draft.has_conflict is False

    fleet = MagicMock()
    console.fleet_client = fleet
    records = console.commit_drafts([draft], mission_id='M1')

    assert records[0]['droneId'] == 'D1'
    fleet.update_mission.assert_called_once_with('M1', {'drones': records})
    assert console.metrics.get_counter('draft_validations_total') == 1


def test_commit_with_conflict_is_rejected(console):
    area = [[106.004, 10.004], [106.006, 10.004], [106.006, 10.006], [106.004, 10.006]]
    draft = console.validate_draft(area, drone_id='D1')

    with pytest.raises(MissionValidationError):
        console.commit_drafts([draft])
    assert console.metrics.get_counter('draft_conflicts_total') == 1


def test_edit_mission_area(console):
    draft = console.edit_mission_area(MISSION_RECORD['drones'][0])
    assert draft.drone_id == 'D1'
    assert len(draft.waypoints) == 2


def test_mission_progress_and_start(console):
    console.register_mission(MISSION_RECORD)
    console.store.ingest({'droneId': 'D1', 'lat': 10.001, 'lon': 106.003})

    progress = console.mission_progress('M1')
    assert progress['drones'] == {'D1': 100.0}
    assert progress['overall'] == 100.0

    assert console.start_mission('M1', 'D1') is False
    assert console.channel.outbox[-1]['action'] == 'mission:start'

    with pytest.raises(KeyError):
        console.mission_progress('missing')
    with pytest.raises(KeyError):
        console.start_mission('M1', 'D9')


def test_load_mission_requires_fleet_api(console):
    with pytest.raises(FleetApiError):
        console.load_mission('M1')


def test_commands_queue_while_disconnected(console):
    assert console.send_command('D1', 'takeoff') is False
    assert console.join_drone('D1') is False
    assert console.channel.pending() == 2

    with pytest.raises(ValueError):
        console.send_command('D1', 'barrel_roll')


# ----------------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------------

def test_cli_status_and_drones(console, capsys):
    console.store.ingest({'droneId': 'D1', 'lat': 10.0, 'lon': 106.0, 'battery': 88})
    cli = CLI(console)

    cli.run(['status'])
    cli.run(['drones'])

    out = capsys.readouterr().out
    assert 'FLEET OPERATIONS CONSOLE' in out
    assert 'D1' in out
    assert '88.0%' in out


def test_cli_video_and_command(console, capsys):
    cli = CLI(console)

    cli.run(['video', 'start', 'D1'])
    cli.run(['video', 'stop', 'D1'])
    cli.run(['command', 'D1', 'teleport'])
    cli.run(['bogus'])

    out = capsys.readouterr().out
    assert 'Video stream started for D1' in out
    assert 'Video stream stopped for D1' in out
    assert 'Unknown drone command: teleport' in out
    assert 'Unknown command: bogus' in out
