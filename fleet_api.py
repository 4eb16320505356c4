# Fleet API Client
# File: fleet_api.py

"""
REST clients for the fleet collaborators: drone roster, no-fly zones,
flight permits and stored missions. Also holds the periodically refreshed
no-fly / permit snapshots used by mission validation.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

import geometry

logger = logging.getLogger(__name__)

EMPTY_POLYGON_SET = {'type': 'FeatureCollection', 'features': []}

# List endpoints may wrap results as {"data": [...], "total": n, ...}
ENVELOPE_KEYS = {'data', 'total', 'page', 'limit', 'meta', 'message', 'statusCode'}


class FleetApiError(Exception):
    """Raised when a fleet collaborator request fails"""


class FleetApiClient:
    """Thin client for the fleet management REST API"""

    def __init__(self, base_url: str, token: Optional[str] = None,
                 timeout: float = 5.0, session: requests.Session = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise FleetApiError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return None

        try:
            body = response.json()
        except ValueError as e:
            raise FleetApiError(f"{method} {path} returned invalid JSON") from e

        if isinstance(body, dict) and 'data' in body and set(body) <= ENVELOPE_KEYS:
            return body['data']
        return body

    def _list(self, path: str, params: Dict = None) -> List[Dict]:
        result = self._request('GET', path, params=params)
        if not isinstance(result, list):
            raise FleetApiError(f"GET {path} did not return a list")
        return result

    # Roster
    def get_drones(self) -> List[Dict]:
        return self._list('/drones')

    def get_drone(self, drone_id: Any) -> Dict:
        return self._request('GET', f'/drones/{drone_id}')

    # Geometry collaborators
    def get_no_fly_zones(self) -> List[Dict]:
        return self._list('/no-fly-zones')

    def get_flight_permits(self) -> List[Dict]:
        return self._list('/flight-permits')

    # Missions
    def get_missions(self, params: Dict = None) -> List[Dict]:
        return self._list('/missions', params=params)

    def get_mission(self, mission_id: Any) -> Dict:
        return self._request('GET', f'/missions/{mission_id}')

    def update_mission(self, mission_id: Any, data: Dict) -> Dict:
        return self._request('PATCH', f'/missions/{mission_id}', json=data)


# ============================================================================
# ZONE SNAPSHOTS
# ============================================================================

class ZoneRegistry:
    """Read-only no-fly and permit polygon sets, refreshed periodically"""

    def __init__(self, client: Optional[FleetApiClient] = None, refresh_seconds: float = 60.0):
        self.client = client
        self.refresh_seconds = refresh_seconds
        self._no_fly = EMPTY_POLYGON_SET
        self._permits = EMPTY_POLYGON_SET
        self.last_refresh: Optional[datetime] = None
        self.lock = threading.Lock()
        self.running = False
        self._stop_event = threading.Event()
        self._thread = None

    @property
    def no_fly_zones(self) -> Dict:
        with self.lock:
            return self._no_fly

    @property
    def permit_areas(self) -> Dict:
        with self.lock:
            return self._permits

    def set_zones(self, no_fly_zones: Dict = None, permit_areas: Dict = None):
        """Replace the snapshots; each snapshot object is never mutated afterwards"""
        with self.lock:
            if no_fly_zones is not None:
                self._no_fly = no_fly_zones
            if permit_areas is not None:
                self._permits = permit_areas
            self.last_refresh = datetime.now()

    def load_records(self, no_fly_records: List[Dict], permit_records: List[Dict]):
        """Build snapshots from collaborator records, skipping malformed geometry"""
        no_fly = geometry.polygon_set_from_records(no_fly_records, geometry_key='geometry')
        permits = geometry.polygon_set_from_records(
            permit_records, geometry_key='airspaceArea', name_key='permitNumber'
        )
        self.set_zones(no_fly, permits)
        logger.info(f"Zones refreshed: {len(no_fly['features'])} no-fly, "
                    f"{len(permits['features'])} permit polygons")

    def refresh(self) -> bool:
        """
        Fetch fresh snapshots. On failure the previous snapshots are kept.

        Returns:
            True if the snapshots were replaced
        """
        if self.client is None:
            return False
        try:
            no_fly_records = self.client.get_no_fly_zones()
            permit_records = self.client.get_flight_permits()
        except FleetApiError as e:
            logger.error(f"Zone refresh failed, keeping previous snapshot: {e}")
            return False

        self.load_records(no_fly_records, permit_records)
        return True

    def start(self):
        """Start periodic refresh"""
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._refresh_loop, daemon=True, name="zone-refresh")
        self._thread.start()
        logger.info(f"Zone refresh started (interval: {self.refresh_seconds}s)")

    def stop(self):
        self.running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Zone refresh stopped")

    def _refresh_loop(self):
        while self.running:
            self.refresh()
            if self._stop_event.wait(self.refresh_seconds):
                break

    def status(self) -> Dict:
        return {
            'no_fly_polygons': len(self.no_fly_zones.get('features', [])),
            'permit_polygons': len(self.permit_areas.get('features', [])),
            'last_refresh': self.last_refresh.isoformat() if self.last_refresh else None,
            'refreshing': self.running,
        }
