# Operations Console Configuration
# File: config.py

"""
Operational constants for the live operations core and the runtime
configuration loaded from the environment.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

# ============================================================================
# LIVE STATE
# ============================================================================

PATH_CAPACITY = 100          # positions kept per drone trail
HISTORY_CAPACITY = 50        # samples kept per battery/altitude/speed history
ACTIVE_WINDOW_MS = 3000      # telemetry staleness window

# Placeholder (lon, lat) for drones known only from the fleet roster
PLACEHOLDER_POSITION = (106.6648, 10.7626)

# ============================================================================
# MISSION AUTHORING
# ============================================================================

NEAR_BOUNDARY_METERS = 50.0

WAYPOINT_DEFAULTS = {
    'altitude_m': 100.0,
    'speed_mps': 10.0,
    'action': 'Survey',
}

# Meters per degree used by the local planar approximation
METERS_PER_DEGREE = 111320.0

# ============================================================================
# MISSION PROGRESS
# ============================================================================

PROGRESS_EPSILON_DEG = 0.0001   # "arrived at last waypoint" radius (~11 m)

# ============================================================================
# VIDEO
# ============================================================================

H264_TOLERANCE_FRAMES = 3    # invalid start codes still fed for the first N frames
VIDEO_FPS = 30

# ============================================================================
# TRANSPORT SUBJECTS
# ============================================================================

SUBJECT_TELEMETRY = "drone:telemetry"
SUBJECT_STATUS = "drone:status"
SUBJECT_VIDEO_FRAME = "video:frame"

ACTION_DRONE_COMMAND = "drone:command"
ACTION_MISSION_START = "mission:start"
ACTION_JOIN_DRONE = "join:drone"


class KafkaTopics:
    """Kafka topics bridged onto the transport subjects"""

    TELEMETRY = "drone.telemetry.stream"
    STATUS = "drone.status.updates"
    VIDEO_FRAMES = "drone.video.frames"
    COMMANDS = "drone.commands"
    MISSIONS = "mission.commands"


# ============================================================================
# RUNTIME CONFIGURATION
# ============================================================================

@dataclass
class ConsoleConfig:
    """Runtime configuration for the operations console"""
    kafka_bootstrap_servers: List[str] = field(default_factory=list)
    kafka_group_id: str = "fleetops-console"
    fleet_api_url: Optional[str] = None
    fleet_api_token: Optional[str] = None
    zone_refresh_seconds: float = 60.0
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    video_fps: int = VIDEO_FPS
    health_check_interval: float = 30.0

    @classmethod
    def from_env(cls, environ=None) -> "ConsoleConfig":
        """Build configuration from FLEETOPS_* environment variables"""
        env = os.environ if environ is None else environ

        servers = env.get("FLEETOPS_KAFKA_BOOTSTRAP", "")

        return cls(
            kafka_bootstrap_servers=[s.strip() for s in servers.split(",") if s.strip()],
            kafka_group_id=env.get("FLEETOPS_KAFKA_GROUP", "fleetops-console"),
            fleet_api_url=env.get("FLEETOPS_FLEET_API_URL") or None,
            fleet_api_token=env.get("FLEETOPS_FLEET_API_TOKEN") or None,
            zone_refresh_seconds=float(env.get("FLEETOPS_ZONE_REFRESH_SECONDS", 60.0)),
            api_host=env.get("FLEETOPS_API_HOST", "127.0.0.1"),
            api_port=int(env.get("FLEETOPS_API_PORT", 8000)),
            video_fps=int(env.get("FLEETOPS_VIDEO_FPS", VIDEO_FPS)),
            health_check_interval=float(env.get("FLEETOPS_HEALTH_INTERVAL", 30.0)),
        )
