# Drone Fleet Live Operations Console
# File: main.py

"""
Operations console engine: wires the transport channel, live drone state,
mission validation, progress estimation and video pipeline into one
runtime, plus a small command line interface.

Installation Requirements:
pip install fastapi uvicorn pydantic kafka-python requests psutil shapely av
"""

import logging
import sys
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from kafka.errors import KafkaError

import config
import geofence_validator
import mission_progress
from config import ConsoleConfig
from drone_state import DroneStateStore
from fleet_api import FleetApiClient, FleetApiError, ZoneRegistry
from h264_decoder import create_decoder
from kafka_integration import TransportKafkaBridge
from models import Mission, MissionAreaDraft, Waypoint
from monitoring import ConsoleMetrics, MetricsCollector
from transport import ConnectionState, TransportChannel, build_join_drone, build_mission_start
from video_pipeline import VideoPipeline

logger = logging.getLogger(__name__)

# ============================================================================
# OPERATIONS CONSOLE ENGINE
# ============================================================================

class OperationsConsole:
    """Owns the live operations components for one console process"""

    def __init__(self, console_config: ConsoleConfig = None,
                 clock: Callable[[], float] = None,
                 decoder_factory: Callable = create_decoder,
                 fleet_client: FleetApiClient = None):
        self.config = console_config or ConsoleConfig()
        self.status = "stopped"
        self.start_time = None

        self.metrics = MetricsCollector()
        self.channel = TransportChannel()
        self.store = DroneStateStore(clock=clock, metrics=self.metrics)
        self.video = VideoPipeline(self.channel, decoder_factory=decoder_factory, metrics=self.metrics)

        if fleet_client is None and self.config.fleet_api_url:
            fleet_client = FleetApiClient(self.config.fleet_api_url, self.config.fleet_api_token)
        self.fleet_client = fleet_client
        self.zones = ZoneRegistry(fleet_client, self.config.zone_refresh_seconds)

        self.missions: Dict[str, Mission] = {}
        self.kafka_bridge: Optional[TransportKafkaBridge] = None
        self.monitoring = ConsoleMetrics(
            self, self.metrics, check_interval=self.config.health_check_interval
        )

        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.channel.subscribe(config.SUBJECT_TELEMETRY, self.store.ingest)
        self.channel.subscribe(config.SUBJECT_STATUS, self.store.status_update)
        self.channel.on_connection_change(self._handle_connection_change)

    def _handle_connection_change(self, state: ConnectionState):
        self.metrics.record_counter('transport_state_changes_total', labels={'state': state.value})

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, with_monitoring: bool = True):
        """Load collaborator data, connect the transport and start background work"""
        self.status = "running"
        self.start_time = datetime.now()

        if self.fleet_client is not None:
            self.load_roster()
            self.zones.refresh()
            self.zones.start()

        if self.config.kafka_bootstrap_servers:
            bridge = TransportKafkaBridge(
                self.channel,
                self.config.kafka_bootstrap_servers,
                self.config.kafka_group_id,
            )
            try:
                bridge.start()
                self.kafka_bridge = bridge
            except KafkaError as e:
                logger.error(f"Kafka unavailable, transport stays disconnected: {e}")

        if with_monitoring:
            self.monitoring.start()

        logger.info("Operations console started")

    def stop(self):
        """Tear down streams and background work; live state is cleared"""
        self.video.stop_all()
        if self.kafka_bridge is not None:
            self.kafka_bridge.stop()
            self.kafka_bridge = None
        if self.zones.running:
            self.zones.stop()
        if self.monitoring.running:
            self.monitoring.stop()
        self.store.clear()
        self.status = "stopped"
        logger.info("Operations console stopped")

    def load_roster(self) -> int:
        """Seed live state from the fleet roster. Failure is logged, not fatal."""
        if self.fleet_client is None:
            return 0
        try:
            drones = self.fleet_client.get_drones()
        except FleetApiError as e:
            logger.error(f"Could not load fleet roster: {e}")
            return 0
        return self.store.load_roster(drones)

    def get_status(self) -> Dict[str, Any]:
        uptime = (datetime.now() - self.start_time).total_seconds() if self.start_time else 0

        return {
            'status': self.status,
            'uptime': f"{int(uptime // 3600)}h {int((uptime % 3600) // 60)}m",
            'uptime_seconds': uptime,
            'transport': self.channel.state.value,
            'queued_messages': self.channel.pending(),
            'drones': len(self.store),
            'active_drones': len(self.store.active_drone_ids()),
            'video_streams': self.video.active_streams(),
            'missions': len(self.missions),
            'zones': self.zones.status(),
        }

    # ------------------------------------------------------------------
    # Mission authoring
    # ------------------------------------------------------------------

    def validate_draft(self, ring: Sequence[Sequence[float]],
                       previous_waypoints: Optional[Sequence[Waypoint]] = None,
                       drone_id: Optional[str] = None) -> MissionAreaDraft:
        """Validate a mission area against the current zone snapshots"""
        draft = geofence_validator.validate_draft(
            ring,
            previous_waypoints,
            self.zones.no_fly_zones,
            self.zones.permit_areas,
            drone_id=drone_id,
        )
        self.metrics.record_counter('draft_validations_total')
        if draft.has_conflict:
            self.metrics.record_counter('draft_conflicts_total')
        return draft

    def commit_drafts(self, drafts: Sequence[MissionAreaDraft],
                      mission_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Commit mission areas; any rejected draft rejects them all.

        When a mission id and fleet API are available the waypoints are
        saved to the stored mission.

        Raises:
            MissionValidationError: if a draft cannot be committed
            FleetApiError: if saving to the fleet API fails
        """
        records = geofence_validator.commit_drafts(drafts)

        if mission_id is not None and self.fleet_client is not None:
            self.fleet_client.update_mission(mission_id, {'drones': records})
            logger.info(f"Saved {len(records)} mission areas to mission {mission_id}")

        return records

    def edit_mission_area(self, record: Dict[str, Any]) -> MissionAreaDraft:
        """Rebuild an editable draft from a stored mission-drone record"""
        return geofence_validator.draft_from_mission_record(
            record, self.zones.no_fly_zones, self.zones.permit_areas
        )

    # ------------------------------------------------------------------
    # Missions & progress
    # ------------------------------------------------------------------

    def register_mission(self, mission: Any) -> Mission:
        if not isinstance(mission, Mission):
            mission = mission_progress.mission_from_record(mission)
        self.missions[mission.id] = mission
        logger.info(f"Mission {mission.id} tracked with {len(mission.drone_waypoints)} drones")
        return mission

    def load_mission(self, mission_id: Any) -> Mission:
        """Fetch a stored mission from the fleet API and track it"""
        if self.fleet_client is None:
            raise FleetApiError("No fleet API configured")
        return self.register_mission(self.fleet_client.get_mission(mission_id))

    def mission_progress(self, mission_id: str) -> Dict[str, Any]:
        mission = self.missions.get(mission_id)
        if mission is None:
            raise KeyError(mission_id)

        per_drone = mission_progress.mission_progress_for(mission, self.store)
        return {
            'mission_id': mission.id,
            'status': mission.status.value,
            'drones': per_drone,
            'overall': mission_progress.overall_progress(per_drone),
        }

    def start_mission(self, mission_id: str, drone_id: str) -> bool:
        """Send mission:start for one drone of a tracked mission"""
        mission = self.missions.get(mission_id)
        if mission is None:
            raise KeyError(mission_id)
        waypoints = mission.drone_waypoints.get(drone_id)
        if not waypoints:
            raise KeyError(drone_id)
        return self.channel.send(build_mission_start(drone_id, waypoints))

    # ------------------------------------------------------------------
    # Drone commands & video
    # ------------------------------------------------------------------

    def send_command(self, drone_id: str, command: str) -> bool:
        return self.channel.send_command(drone_id, command)

    def join_drone(self, drone_id: str) -> bool:
        return self.channel.send(build_join_drone(drone_id))

    def start_video(self, drone_id: str, surface: Any = None):
        return self.video.start(drone_id, surface)

    def stop_video(self, drone_id: str) -> bool:
        return self.video.stop(drone_id)

# ============================================================================
# CLI INTERFACE
# ============================================================================

class CLI:
    """Command Line Interface"""

    def __init__(self, console: OperationsConsole):
        self.console = console
        self.commands = {
            'status': self._status_cmd,
            'drones': self._drones_cmd,
            'zones': self._zones_cmd,
            'video': self._video_cmd,
            'command': self._command_cmd,
            'health': self._health_cmd,
            'help': self._help_cmd
        }

    def run(self, args: List[str]):
        if not args:
            self._help_cmd([])
            return

        command = args[0]
        if command in self.commands:
            self.commands[command](args[1:])
        else:
            print(f"Unknown command: {command}")
            self._help_cmd([])

    def _status_cmd(self, args: List[str]):
        status = self.console.get_status()
        print(f"\n{'='*60}")
        print("FLEET OPERATIONS CONSOLE")
        print(f"{'='*60}")
        print(f"Status: {status['status'].upper()}")
        print(f"Uptime: {status['uptime']}")
        print(f"Transport: {status['transport']} ({status['queued_messages']} queued)")
        print(f"Drones: {status['drones']} ({status['active_drones']} active)")
        print(f"Video streams: {', '.join(status['video_streams']) or 'none'}")
        print(f"Missions tracked: {status['missions']}")
        print(f"Zones: {status['zones']['no_fly_polygons']} no-fly, "
              f"{status['zones']['permit_polygons']} permit")
        print(f"{'='*60}\n")

    def _drones_cmd(self, args: List[str]):
        snapshot = self.console.store.snapshot()
        print(f"\n{'='*90}")
        print(f"{'ID':<12} {'Name':<20} {'Status':<15} {'Active':<8} {'Battery':<10} {'Location'}")
        print(f"{'='*90}")
        for drone_id, d in sorted(snapshot.items()):
            battery = f"{d['battery']:.1f}%" if d['battery'] is not None else '-'
            location = f"({d['lat']:.5f}, {d['lon']:.5f})" if d['has_fix'] else 'no fix'
            print(f"{drone_id:<12} {(d['name'] or '-'):<20} {(d['status'] or '-'):<15} "
                  f"{'Yes' if d['active'] else 'No':<8} {battery:<10} {location}")
        print(f"{'='*90}\n")

    def _zones_cmd(self, args: List[str]):
        if args and args[0] == 'refresh':
            ok = self.console.zones.refresh()
            print("Zones refreshed" if ok else "Zone refresh failed")
        status = self.console.zones.status()
        print(f"No-fly polygons: {status['no_fly_polygons']}")
        print(f"Permit polygons: {status['permit_polygons']}")
        print(f"Last refresh: {status['last_refresh'] or 'never'}")

    def _video_cmd(self, args: List[str]):
        if len(args) < 2 or args[0] not in ('start', 'stop', 'stats'):
            print("Usage: video [start|stop|stats] <drone_id>")
            return

        action, drone_id = args[0], args[1]
        if action == 'start':
            self.console.start_video(drone_id)
            print(f"Video stream started for {drone_id}")
        elif action == 'stop':
            stopped = self.console.stop_video(drone_id)
            print(f"Video stream stopped for {drone_id}" if stopped else f"No stream for {drone_id}")
        else:
            print(self.console.video.stats(drone_id) or f"No stream for {drone_id}")

    def _command_cmd(self, args: List[str]):
        if len(args) < 2:
            print("Usage: command <drone_id> [takeoff|land|start_video_stream|stop_video_stream]")
            return
        try:
            sent = self.console.send_command(args[0], args[1])
        except ValueError:
            print(f"Unknown drone command: {args[1]}")
            return
        print("Command sent" if sent else "Transport disconnected, command queued")

    def _health_cmd(self, args: List[str]):
        health = self.console.monitoring.health_monitor.get_health_status()
        print(f"Overall: {health['overall_status'].upper()}")
        for check in health['checks']:
            print(f"  {check['component']:<18} {check['status']}")

    def _help_cmd(self, args: List[str]):
        print("\n" + "="*70)
        print("Fleet Operations Console CLI")
        print("="*70)
        print("\nCommands:")
        print("  status        - Show console status")
        print("  drones        - List live drone state")
        print("  zones         - Show or refresh no-fly/permit snapshots (zones refresh)")
        print("  video         - Control video streams (start|stop|stats <drone_id>)")
        print("  command       - Send a drone command (command <drone_id> <command>)")
        print("  health        - Run health checks")
        print("  help          - Show this help")
        print("="*70 + "\n")

# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    console = OperationsConsole(ConsoleConfig.from_env())
    console.start()

    cli = CLI(console)

    if len(sys.argv) > 1:
        cli.run(sys.argv[1:])
        console.stop()
    else:
        print("\nType 'help' for commands, 'exit' to quit\n")

        while True:
            try:
                command = input("FLEET> ").strip()

                if command.lower() in ['exit', 'quit']:
                    console.stop()
                    break

                if command:
                    cli.run(command.split())

            except KeyboardInterrupt:
                console.stop()
                break
            except Exception as e:
                print(f"Error: {e}")
