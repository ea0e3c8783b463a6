"""Client for the single-entity indexing endpoint."""
from dataclasses import dataclass
from typing import Optional
import requests

from embedding_queue import settings
from embedding_queue.logging_conf import logger

MAX_ERROR_LENGTH = 500


@dataclass
class IndexingOutcome:
    """Normalized result of one indexing call."""

    success: bool
    message: str
    status_code: Optional[int] = None
    provider: str = "unknown"


class IndexingClient:
    """Calls the indexing endpoint once per entity, without retrying.

    Retries belong to the queue: a failed call leaves the item in 'failed'
    and the backoff decides when it is tried again.
    """

    def __init__(self, endpoint_url: str = None, timeout: float = None, api_key: str = None):
        self.endpoint_url = endpoint_url or settings.INDEXING_ENDPOINT_URL
        self.timeout = timeout or settings.INDEXING_TIMEOUT
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        api_key = api_key or settings.INDEXING_API_KEY
        if api_key:
            self.session.headers["Authorization"] = f"Bearer {api_key}"

    def index_entity(self, object_type: str, object_id: str) -> IndexingOutcome:
        """
        Ask the indexing endpoint to embed and upsert one entity.

        Args:
            object_type: Entity kind (jetshare_offer, flight, user, crew)
            object_id: Entity ID

        Returns:
            IndexingOutcome; never raises for HTTP or network problems
        """
        try:
            response = self.session.post(
                self.endpoint_url,
                json={"type": object_type, "id": object_id},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            return IndexingOutcome(False, f"Indexing request timed out after {self.timeout}s")
        except requests.exceptions.RequestException as e:
            return IndexingOutcome(False, _truncate(f"Indexing request failed: {e}"))

        body = self._json_body(response)

        if not response.ok:
            detail = body.get("details") or body.get("error") or response.text or response.reason
            return IndexingOutcome(
                False,
                _truncate(f"Indexing endpoint returned {response.status_code}: {detail}"),
                status_code=response.status_code,
            )

        # 2xx with an explicit {"success": false} is a partial failure (e.g. vector upsert failed)
        if body.get("success") is False:
            detail = body.get("error") or body.get("warning") or "indexing reported failure"
            return IndexingOutcome(
                False,
                _truncate(f"Indexing endpoint reported failure: {detail}"),
                status_code=response.status_code,
            )

        logger.debug(f"Indexed {object_type}:{object_id} ({response.status_code})")
        return IndexingOutcome(
            True,
            "indexed",
            status_code=response.status_code,
            provider=str(body.get("provider") or "unknown"),
        )

    def close(self):
        self.session.close()

    def _json_body(self, response: requests.Response) -> dict:
        """Parse a JSON object body, or return {} for anything else."""
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


def _truncate(message: str) -> str:
    return message[:MAX_ERROR_LENGTH]
