# FastAPI Web Server for the Fleet Operations Console
# File: api_server.py

"""
HTTP and WebSocket surface for the rendering collaborator: live drone
state, mission-area validation and commit, mission progress, video stream
control, health and metrics.

Run with: uvicorn api_server:app --port 8000
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

import config
from config import ConsoleConfig
from fleet_api import FleetApiError
from geofence_validator import MissionValidationError, summarize_draft
from models import Waypoint

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Fleet Operations Console API",
    description="Live drone state, mission validation and video control",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global console instance (initialized on startup)
console = None


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

manager = ConnectionManager()

# ============================================================================
# REQUEST MODELS
# ============================================================================

class WaypointModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    seq_number: int = Field(validation_alias=AliasChoices('seq_number', 'seqNumber'))
    lon: Optional[float] = None
    lat: Optional[float] = None
    # Left untyped so a bad value reaches commit validation as a 422 with a reason
    altitude_m: Any = Field(config.WAYPOINT_DEFAULTS['altitude_m'],
                            validation_alias=AliasChoices('altitude_m', 'altitudeM'))
    speed_mps: Any = Field(config.WAYPOINT_DEFAULTS['speed_mps'],
                           validation_alias=AliasChoices('speed_mps', 'speedMps'))
    action: Optional[str] = config.WAYPOINT_DEFAULTS['action']

    def to_waypoint(self) -> Waypoint:
        return Waypoint(
            seq_number=self.seq_number,
            lon=self.lon,
            lat=self.lat,
            altitude_m=self.altitude_m,
            speed_mps=self.speed_mps,
            action=self.action,
        )

class DraftRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ring: List[List[float]]
    drone_id: Optional[str] = Field(None, validation_alias=AliasChoices('drone_id', 'droneId'))
    waypoints: List[WaypointModel] = []

class CommitRequest(BaseModel):
    mission_id: Optional[str] = None
    drafts: List[DraftRequest]

class StatusRequest(BaseModel):
    status: str

class CommandRequest(BaseModel):
    command: str

class MissionStartRequest(BaseModel):
    drone_id: str

class ZoneRecordsRequest(BaseModel):
    no_fly_zones: List[Dict[str, Any]] = []
    permits: List[Dict[str, Any]] = []

# ============================================================================
# LIFECYCLE EVENTS
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize the operations console on startup"""
    global console

    from main import OperationsConsole

    console = OperationsConsole(ConsoleConfig.from_env())
    console.start()
    logger.info("Operations console API started")

@app.on_event("shutdown")
async def shutdown_event():
    if console:
        console.stop()
    logger.info("Operations console API stopped")

def get_console():
    if console is None:
        raise HTTPException(status_code=503, detail="Console not initialized")
    return console

def _draft_from_request(request: DraftRequest):
    return get_console().validate_draft(
        request.ring,
        [wp.to_waypoint() for wp in request.waypoints],
        drone_id=request.drone_id,
    )

# ============================================================================
# CONSOLE ENDPOINTS
# ============================================================================

@app.get("/api/console/status")
async def get_console_status():
    return get_console().get_status()

@app.get("/api/health")
async def get_health():
    """Run all component health checks"""
    return get_console().monitoring.health_monitor.get_health_status()

@app.get("/api/metrics", response_class=PlainTextResponse)
async def get_metrics():
    """Prometheus text exposition"""
    return get_console().monitoring.export_prometheus()

@app.get("/api/dashboard")
async def get_dashboard():
    return get_console().monitoring.get_dashboard_data()

# ============================================================================
# LIVE STATE ENDPOINTS
# ============================================================================

@app.get("/api/drones")
async def list_drones():
    """Live state of every known drone"""
    snapshot = get_console().store.snapshot()
    return {
        "count": len(snapshot),
        "active": [d for d, s in snapshot.items() if s['active']],
        "drones": snapshot
    }

@app.get("/api/drones/{drone_id}")
async def get_drone(drone_id: str):
    store = get_console().store
    state = store.get(drone_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Drone not found")
    return state.to_dict(active=store.is_active(drone_id))

@app.post("/api/telemetry")
async def ingest_telemetry(payload: Union[List[Dict[str, Any]], Dict[str, Any]]):
    """Ingest one telemetry payload or a batch"""
    updated = get_console().store.ingest(payload)
    received = len(payload) if isinstance(payload, list) else 1
    return {
        "accepted": len(updated),
        "dropped": received - len(updated),
        "drones": sorted({s.drone_id for s in updated})
    }

@app.post("/api/drones/{drone_id}/status")
async def update_drone_status(drone_id: str, request: StatusRequest):
    state = get_console().store.status_update(drone_id, request.status)
    if state is None:
        raise HTTPException(status_code=400, detail=f"Invalid status: {request.status}")
    return {"drone_id": drone_id, "status": state.status.value}

@app.post("/api/drones/{drone_id}/commands")
async def send_drone_command(drone_id: str, request: CommandRequest):
    try:
        sent = get_console().send_command(drone_id, request.command)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown command: {request.command}")
    return {"drone_id": drone_id, "command": request.command, "queued": not sent}

@app.post("/api/drones/{drone_id}/join")
async def join_drone(drone_id: str):
    sent = get_console().join_drone(drone_id)
    return {"drone_id": drone_id, "queued": not sent}

# ============================================================================
# VIDEO ENDPOINTS
# ============================================================================

@app.post("/api/drones/{drone_id}/video/start")
async def start_video(drone_id: str):
    get_console().start_video(drone_id)
    return get_console().video.stats(drone_id)

@app.post("/api/drones/{drone_id}/video/stop")
async def stop_video(drone_id: str):
    return {"drone_id": drone_id, "stopped": get_console().stop_video(drone_id)}

@app.get("/api/drones/{drone_id}/video")
async def get_video_stats(drone_id: str):
    stats = get_console().video.stats(drone_id)
    if stats is None:
        raise HTTPException(status_code=404, detail="No video stream for drone")
    return stats

@app.post("/api/video/frames")
async def push_video_frame(event: Dict[str, Any]):
    """Inbound frame event {droneId, payload} for transports without Kafka"""
    return {"fed": get_console().video.handle_frame(event)}

# ============================================================================
# MISSION ENDPOINTS
# ============================================================================

@app.post("/api/missions/drafts/validate")
async def validate_draft(request: DraftRequest):
    """Validate a drawn mission area against no-fly zones and permits"""
    draft = _draft_from_request(request)
    result = draft.to_dict()
    result['validation'] = summarize_draft(draft)
    return result

@app.post("/api/missions/drafts/commit")
async def commit_drafts(request: CommitRequest):
    """Re-validate and commit mission areas; any conflict rejects the request"""
    drafts = [_draft_from_request(d) for d in request.drafts]
    try:
        records = get_console().commit_drafts(drafts, mission_id=request.mission_id)
    except MissionValidationError as e:
        raise HTTPException(status_code=422, detail=e.to_dict())
    except FleetApiError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"mission_id": request.mission_id, "drones": records}

@app.post("/api/missions")
async def track_mission(record: Dict[str, Any]):
    """Track a stored mission for progress estimation"""
    if record.get('id') is None:
        raise HTTPException(status_code=400, detail="Mission id is required")
    mission = get_console().register_mission(record)
    return {
        "mission_id": mission.id,
        "status": mission.status.value,
        "drones": {d: len(w) for d, w in mission.drone_waypoints.items()}
    }

@app.get("/api/missions/{mission_id}/progress")
async def get_mission_progress(mission_id: str):
    try:
        return get_console().mission_progress(mission_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Mission not found")

@app.post("/api/missions/{mission_id}/start")
async def start_mission(mission_id: str, request: MissionStartRequest):
    try:
        sent = get_console().start_mission(mission_id, request.drone_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Mission or drone assignment not found")
    return {"mission_id": mission_id, "drone_id": request.drone_id, "queued": not sent}

# ============================================================================
# ZONE ENDPOINTS
# ============================================================================

@app.get("/api/zones")
async def get_zones():
    zones = get_console().zones
    return {
        "status": zones.status(),
        "no_fly_zones": zones.no_fly_zones,
        "permit_areas": zones.permit_areas
    }

@app.put("/api/zones")
async def load_zones(request: ZoneRecordsRequest):
    """Replace zone snapshots from collaborator records"""
    zones = get_console().zones
    zones.load_records(request.no_fly_zones, request.permits)
    return zones.status()

# ============================================================================
# WEBSOCKET
# ============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Pushes live state snapshots once per second"""
    await manager.connect(websocket)

    try:
        while True:
            current = get_console()
            await websocket.send_json({
                "type": "live_state",
                "timestamp": datetime.now().isoformat(),
                "transport": current.channel.state.value,
                "drones": current.store.snapshot(),
                "video_streams": current.video.active_streams()
            })

            # waiting on the client paces pushes and surfaces a disconnect
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=1)
            except asyncio.TimeoutError:
                pass

    except WebSocketDisconnect:
        logger.info("Live state client disconnected")
    finally:
        manager.disconnect(websocket)

# ============================================================================
# HEALTH CHECK
# ============================================================================

@app.get("/")
async def root():
    return {
        "name": "Fleet Operations Console API",
        "version": "1.0.0",
        "console": console.status if console else "not_initialized",
        "docs": "/docs"
    }

@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "console": console.status if console else "not_initialized",
        "websocket_clients": len(manager.active_connections),
        "timestamp": datetime.now().isoformat()
    }

if __name__ == "__main__":
    import uvicorn

    settings = ConsoleConfig.from_env()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
