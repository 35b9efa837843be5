import asyncio
import math
import httpx

from payment_api.config import settings
from payment_api.errors import TransientInfraError
from payment_api.logging_config import get_logger


logger = get_logger(__name__)


def _retry_after_seconds(response: httpx.Response, default: float) -> float:
    # Only the delta-seconds form is honored; HTTP-dates fall back to the backoff.
    retry_after = response.headers.get("Retry-After")
    if not retry_after:
        return default
    try:
        seconds = float(retry_after)
    except ValueError:
        return default
    if not math.isfinite(seconds) or seconds < 0:
        return default
    return seconds


class MercadoPagoClient:
    def __init__(
        self,
        access_token: str | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client = httpx.AsyncClient(
            base_url=str(settings.mp_api_base_url),
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )
        self._access_token = access_token
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_backoff_seconds = retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds

    @property
    def access_token(self) -> str | None:
        return self._access_token if self._access_token is not None else settings.mp_access_token

    async def _request_with_retry(self, method: str, url: str) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        headers = {"Authorization": f"Bearer {self.access_token}"}
        while True:
            try:
                response = await self.client.request(method, url, headers=headers)
            except httpx.TimeoutException as exc:
                raise TransientInfraError(f"provider timeout: {exc}") from exc
            except httpx.RequestError as exc:
                raise TransientInfraError(f"provider request error: {exc}") from exc
            if response.status_code == 429 or response.status_code >= 500:
                if retries >= self.max_retries:
                    return response
                wait = backoff
                if response.status_code == 429:
                    wait = _retry_after_seconds(response, backoff)
                logger.warning(
                    "Provider request retry: url=%s status=%s attempt=%s wait=%s",
                    url,
                    response.status_code,
                    retries + 1,
                    wait,
                )
                await asyncio.sleep(wait)
                retries += 1
                backoff *= 2
                continue
            return response

    async def fetch_payment(self, payment_id: str) -> dict:
        if not self.access_token:
            raise TransientInfraError("provider access token is not configured")
        resp = await self._request_with_retry("GET", f"/v1/payments/{payment_id}")
        if resp.status_code == 200:
            try:
                payment = resp.json()
            except ValueError as exc:
                logger.error("Payment lookup returned non-JSON body: payment_id=%s body=%s", payment_id, resp.text)
                raise TransientInfraError("payment lookup returned an unreadable body") from exc
            if not isinstance(payment, dict):
                logger.error("Payment lookup returned unexpected body: payment_id=%s body=%s", payment_id, resp.text)
                raise TransientInfraError("payment lookup returned an unexpected body")
            return payment
        logger.error("Payment lookup failed: payment_id=%s status=%s body=%s", payment_id, resp.status_code, resp.text)
        raise TransientInfraError(f"payment lookup failed with status {resp.status_code}")

    async def aclose(self) -> None:
        await self.client.aclose()


provider_client = MercadoPagoClient()


def get_provider_client() -> MercadoPagoClient:
    return provider_client
