"""
Remote assessment-storage and metrics service client.
Maps every transport or HTTP failure onto the transient / permanent / malformed
taxonomy so the retry engine can apply the right policy.
"""
import logging
from typing import Optional

import httpx
from pydantic import BaseModel, ValidationError

from ..core.config import settings
from ..core.exceptions import (
    MalformedResponseError,
    PermanentRejectionError,
    TransientNetworkError,
)
from ..schemas.assessment import (
    AssessmentRecord,
    HealthPayload,
    MetricsSource,
    RemoteReceipt,
    UserMetrics,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429}
BODY_EXCERPT_LENGTH = 200


def _excerpt(response: httpx.Response) -> str:
    text = response.text or ""
    return text[:BODY_EXCERPT_LENGTH]


def _raise_for_status(response: httpx.Response) -> None:
    code = response.status_code
    if code < 400:
        return
    if code >= 500 or code in TRANSIENT_STATUS_CODES:
        raise TransientNetworkError(
            f"{response.request.method} {response.request.url.path} returned {code}",
            status_code=code,
        )
    detail = _excerpt(response)
    try:
        body = response.json()
        if isinstance(body, dict) and "detail" in body:
            detail = str(body["detail"])
    except ValueError:
        pass
    raise PermanentRejectionError(
        f"{response.request.method} {response.request.url.path} rejected with {code}",
        status_code=code,
        detail=detail,
    )


def _parse(response: httpx.Response, model: type) -> BaseModel:
    try:
        return model.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        logger.warning(
            "Malformed %s payload from %s (status %d): %r",
            model.__name__, response.request.url.path, response.status_code, _excerpt(response),
        )
        raise MalformedResponseError(
            f"Unexpected {model.__name__} payload from {response.request.url.path}",
            status_code=response.status_code,
        ) from exc


class RemoteAssessmentClient:
    """Async HTTP client for the remote assessment store."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        submit_timeout: Optional[float] = None,
        probe_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url if base_url is not None else settings.REMOTE_API_URL
        self.api_key = api_key if api_key is not None else settings.REMOTE_API_KEY
        self.submit_timeout = submit_timeout if submit_timeout is not None else settings.SUBMIT_TIMEOUT
        self.probe_timeout = probe_timeout if probe_timeout is not None else settings.PROBE_TIMEOUT

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url or "",
            headers=headers,
            timeout=self.submit_timeout,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, timeout: Optional[float] = None, **kwargs) -> httpx.Response:
        if not self.configured:
            raise TransientNetworkError("Remote service URL is not configured")
        try:
            response = await self._client.request(
                method, path, timeout=timeout if timeout is not None else self.submit_timeout, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{method} {path} timed out") from exc
        except httpx.RequestError as exc:
            raise TransientNetworkError(f"{method} {path} failed: {exc}") from exc
        _raise_for_status(response)
        return response

    async def submit_assessment(self, record: AssessmentRecord) -> RemoteReceipt:
        response = await self._request(
            "POST",
            "/assessments",
            json=record.to_remote_payload(),
            headers={"Idempotency-Key": record.local_id},
        )
        return _parse(response, RemoteReceipt)

    async def get_metrics(self, user_id: str) -> Optional[UserMetrics]:
        """Fetch the user's aggregate. None means no aggregate exists yet."""
        try:
            response = await self._request("GET", f"/metrics/{user_id}")
        except PermanentRejectionError as exc:
            if exc.status_code == 404:
                return None
            raise
        metrics = _parse(response, UserMetrics)
        return metrics.model_copy(update={"source": MetricsSource.REMOTE})

    async def put_metrics(self, user_id: str, patch: dict) -> None:
        await self._request("PUT", f"/metrics/{user_id}", json=patch)

    async def health(self) -> HealthPayload:
        response = await self._request("GET", "/health", timeout=self.probe_timeout)
        return _parse(response, HealthPayload)
