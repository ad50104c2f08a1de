"""
HTTP Persistence Gateway

Delivers batches to the remote store's JSON API with a pooled requests
Session. Every call is a single attempt: retry, backoff and requeue
decisions belong to the scheduler, so a worker thread is never stuck
sleeping inside the gateway.

Response classification:
    2xx              -> success
    401              -> Unauthenticated
    429, 5xx         -> TransientStoreError
    other 4xx        -> RejectedByStore
    timeout / socket -> TransientStoreError
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional
import requests
from collectors.base_data_collector import Sample
from pipeline.batch_buffer import Batch
from pipeline.errors import RejectedByStore, TransientStoreError, Unauthenticated
from pipeline.identity import Identity
from sharedUtils.config.models import PersistenceConfig
from sharedUtils.logger.logger import get_logger
from sharedUtils.persistence.base_gateway import (
    DEFAULT_HISTORY_LIMIT,
    AggregateStats,
    HourlyBucket,
    OutcomeKind,
    PersistenceGateway,
    PersistenceOutcome,
    require_batch,
)

logger = get_logger(__name__)

PERFORMANCE_PATH = "/api/performance"
STATS_PATH = "/api/performance/stats"
HOURLY_PATH = "/api/performance/hourly"
DEVICES_PATH = "/api/devices"
HEALTH_PATH = "/health"


class HttpPersistenceGateway(PersistenceGateway):
    """
    requests-based client of the remote store.

    Attributes:
        api_endpoint: Base URL of the store (no trailing slash)
        timeout: Request timeout in seconds
        session: HTTP session, created by start()
    """

    def __init__(self, config: PersistenceConfig, session: Optional[requests.Session] = None):
        self.api_endpoint = config.api_endpoint.rstrip("/")
        self.timeout = config.timeout
        self.session: Optional[requests.Session] = session

        logger.debug("HttpPersistenceGateway initialized with endpoint: %s", self.api_endpoint)

    def start(self) -> None:
        if self.session is None:
            self.session = requests.Session()
            self.session.headers.update({'Content-Type': 'application/json'})
        logger.info("HttpPersistenceGateway started")

    def stop(self) -> None:
        if self.session:
            self.session.close()
            self.session = None
        logger.info("HttpPersistenceGateway stopped")

    def _request(self, method: str, path: str, identity: Optional[Identity],
                 batch: Optional[Batch] = None, **kwargs) -> requests.Response:
        """
        Issue one request and translate transport failures.

        Raises:
            TransientStoreError: On timeout or connection failure
        """
        if self.session is None:
            self.start()

        headers = kwargs.pop("headers", {})
        if identity is not None:
            headers["Authorization"] = f"Bearer {identity.access_token}"

        url = f"{self.api_endpoint}{path}"
        try:
            return self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.warning("Timeout calling %s %s", method, url)
            raise TransientStoreError(f"Request timed out: {e}", batch) from e
        except requests.exceptions.ConnectionError as e:
            logger.warning("Connection error calling %s %s: %s", method, url, str(e))
            raise TransientStoreError(f"ConnectionError: {e}", batch) from e
        except requests.exceptions.RequestException as e:
            logger.error("Unexpected error calling %s %s: %s", method, url, str(e))
            raise TransientStoreError(f"Unexpected error: {e}", batch) from e

    @staticmethod
    def _raise_for_status(response: requests.Response, batch: Optional[Batch] = None) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return

        error = f"HTTP {status}: {response.text[:200]}"
        if status == 401:
            raise Unauthenticated(error, batch)
        if status == 429 or status >= 500:
            raise TransientStoreError(error, batch)
        raise RejectedByStore(error, batch, status_code=status)

    def persist(self, batch: Batch, identity: Optional[Identity]) -> PersistenceOutcome:
        require_batch(batch)
        if identity is None:
            raise Unauthenticated("No identity available for persist", batch)

        payload = {
            "batch_id": batch.batch_id,
            "reason": batch.reason.value,
            "samples": [sample.model_dump(mode="json") for sample in batch.samples],
        }
        response = self._request("POST", PERFORMANCE_PATH, identity, batch, data=json.dumps(payload))
        try:
            self._raise_for_status(response, batch)
        except Unauthenticated:
            logger.warning("Store refused credentials of user %s for batch %s",
                           identity.user_id, batch.batch_id)
            raise
        except RejectedByStore as e:
            logger.error("Store rejected batch %s: %s", batch.batch_id, e)
            raise

        logger.info("Persisted batch %s (%d samples, HTTP %d)",
                    batch.batch_id, len(batch), response.status_code)
        return PersistenceOutcome(kind=OutcomeKind.SUCCEEDED, batch=batch)

    def _get_json(self, path: str, identity: Identity, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if identity is None:
            raise Unauthenticated("No identity available for query")

        params = {k: v for k, v in params.items() if v is not None}
        response = self._request("GET", path, identity, params=params)
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return response.json()

    def fetch_history(self, identity: Identity, device_id: Optional[str] = None,
                      start: Optional[datetime] = None, end: Optional[datetime] = None,
                      limit: int = DEFAULT_HISTORY_LIMIT) -> List[Sample]:
        data = self._get_json(PERFORMANCE_PATH, identity, {
            "device_id": device_id or identity.device_id,
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
            "limit": limit,
        })
        if not data:
            return []
        return [Sample.model_validate(row) for row in data.get("samples", [])]

    def fetch_aggregates(self, identity: Identity, device_id: Optional[str] = None,
                         window_hours: float = 24) -> AggregateStats:
        data = self._get_json(STATS_PATH, identity, {
            "device_id": device_id or identity.device_id,
            "hours": window_hours,
        })
        if not data:
            return AggregateStats(device_id=device_id, window_hours=window_hours, count=0, metrics={})
        return AggregateStats.model_validate(data["stats"])

    def fetch_hourly(self, identity: Identity, device_id: Optional[str] = None,
                     window_hours: float = 24) -> List[HourlyBucket]:
        data = self._get_json(HOURLY_PATH, identity, {
            "device_id": device_id or identity.device_id,
            "hours": window_hours,
        })
        if not data:
            return []
        return [HourlyBucket.model_validate(row) for row in data.get("buckets", [])]

    def register_device(self, identity: Identity, device_id: str, device_name: str,
                        device_type: str = "desktop", os_name: str = "") -> Dict:
        if identity is None:
            raise Unauthenticated("No identity available for device registration")

        body = {
            "device_id": device_id,
            "device_name": device_name,
            "device_type": device_type,
            "os": os_name,
        }
        response = self._request("POST", DEVICES_PATH, identity, data=json.dumps(body))
        self._raise_for_status(response)
        device = response.json()["device"]
        logger.info("Device '%s' registered for user %s", device_id, identity.user_id)
        return device

    def check_connection(self) -> bool:
        try:
            response = self._request("GET", HEALTH_PATH, None)
        except TransientStoreError:
            return False
        return response.status_code == 200
