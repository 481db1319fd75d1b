from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from .bundle import BUNDLE_CONTENT_TYPE
from .config import DEFAULT_FREE_TIER_THRESHOLD, DEFAULT_GATEWAY, DEFAULT_TIMEOUT_S, DEFAULT_UPLOAD_URL
from .errors import InsufficientFundsError, NetworkError, ValidationError
from .models import BundleMetadata, DurabilityState, UploadResult, is_valid_content_id
from .retry import RetryPolicy
from .signing import Signer, b64url_encode

log = logging.getLogger(__name__)

APP_NAME = "Agent-Skills-Registry"
RETRY_STATUSES = (502, 503)
ARCHIVE_CONTENT_TYPES = {
    "application/x-tar+gzip",
    "application/tar+gzip",
    "application/gzip",
    "application/x-gzip",
    "application/x-tar",
    "application/x-gtar",
    "application/x-compressed-tar",
}
DURABILITY_TIMEOUT_S = 300.0
DURABILITY_INTERVAL_S = 30.0
_CHUNK = 64 * 1024


@dataclass(frozen=True)
class DownloadProgress:
    received: int
    total: int | None


def is_retryable_transport_error(e: BaseException) -> bool:
    """Connect timeouts, dropped connections and 502/503 are transient; everything else is final."""
    if isinstance(e, httpx.ConnectTimeout):
        return True
    if isinstance(e, httpx.TimeoutException):
        return False
    if isinstance(e, httpx.TransportError):
        return True
    if isinstance(e, httpx.HTTPStatusError):
        return e.response.status_code in RETRY_STATUSES
    return False


def _to_network_error(e: httpx.HTTPError, url: str) -> NetworkError:
    if isinstance(e, httpx.TimeoutException):
        return NetworkError(
            f"Request to {url} timed out.",
            error_type=NetworkError.TIMEOUT,
            endpoint=url,
            hint="The gateway is slow to respond; try again later or use a different --gateway.",
        )
    if isinstance(e, httpx.HTTPStatusError):
        code = e.response.status_code
        return NetworkError(
            f"Gateway returned HTTP {code} for {url}",
            error_type=NetworkError.GATEWAY_ERROR,
            endpoint=url,
            status_code=code,
            hint="The gateway is temporarily unavailable; try again later.",
        )
    return NetworkError(
        f"Could not reach {url}: {e}",
        error_type=NetworkError.CONNECTION_FAILURE,
        endpoint=url,
        hint="Check your network connection.",
    )


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


class BundleTransport:
    """
    Moves bundle bytes to and from the storage network.

    Uploads below `free_tier_threshold` go to the subsidized upload service; larger ones are
    paid directly through the gateway after a price and balance check.
    """

    def __init__(
        self,
        *,
        gateway: str = DEFAULT_GATEWAY,
        upload_url: str = DEFAULT_UPLOAD_URL,
        free_tier_threshold: int = DEFAULT_FREE_TIER_THRESHOLD,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway.rstrip("/")
        self.upload_url = upload_url.rstrip("/")
        self.free_tier_threshold = free_tier_threshold
        self.timeout_s = timeout_s
        self._http = http or httpx.Client(timeout=timeout_s, follow_redirects=True)
        self._sleep = sleep
        self._clock = clock
        self._policy = RetryPolicy(
            max_attempts=3,
            base_delay_s=1.0,
            multiplier=2.0,
            retryable=is_retryable_transport_error,
            sleep=sleep,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "BundleTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _call(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        def _once() -> httpx.Response:
            resp = self._http.request(method, url, timeout=self.timeout_s, **kwargs)
            if resp.status_code in RETRY_STATUSES:
                resp.raise_for_status()
            return resp

        try:
            return self._policy.run(_once, label=f"{method} {url}")
        except httpx.HTTPError as e:
            raise _to_network_error(e, url) from e

    @staticmethod
    def _check(resp: httpx.Response, url: str) -> httpx.Response:
        if resp.status_code >= 400:
            raise NetworkError(
                f"Gateway returned HTTP {resp.status_code} for {url}: {resp.text[:300]}",
                error_type=NetworkError.GATEWAY_ERROR,
                endpoint=url,
                status_code=resp.status_code,
            )
        return resp

    def _get_int(self, url: str) -> int:
        resp = self._check(self._call("GET", url), url)
        text = resp.text.strip()
        try:
            return int(text)
        except ValueError as e:
            raise NetworkError(
                f"Gateway returned a non-numeric value for {url}: {text[:100]!r}",
                error_type=NetworkError.GATEWAY_ERROR,
                endpoint=url,
            ) from e

    # -- upload -----------------------------------------------------------

    def estimate_cost(self, size: int) -> int:
        if size < self.free_tier_threshold:
            return 0
        return self._get_int(f"{self.gateway}/price/{size}")

    def balance(self, address: str) -> int:
        return self._get_int(f"{self.gateway}/wallet/{address}/balance")

    @staticmethod
    def _tags(metadata: BundleMetadata) -> list[dict[str, str]]:
        tags = {
            "Content-Type": BUNDLE_CONTENT_TYPE,
            "App-Name": APP_NAME,
            "Skill-Name": metadata.name,
            "Skill-Version": metadata.version,
            **metadata.extra_tags,
        }
        return [{"name": k, "value": v} for k, v in tags.items()]

    def upload(self, data: bytes, metadata: BundleMetadata, signer: Signer) -> UploadResult:
        size = len(data)
        free = size < self.free_tier_threshold
        cost = 0
        if not free:
            cost = self.estimate_cost(size)
            balance = self.balance(signer.address)
            if balance < cost:
                raise InsufficientFundsError(
                    f"Insufficient balance: upload costs {cost} winston, wallet holds {balance}.",
                    address=signer.address,
                    balance=balance,
                    cost=cost,
                )

        tags = self._tags(metadata)
        envelope = json.dumps({"owner": signer.owner, "tags": tags}, sort_keys=True, separators=(",", ":")).encode("utf-8")
        signature = signer.sign(envelope + hashlib.sha256(data).digest())
        content_id = b64url_encode(hashlib.sha256(signature).digest())

        url = f"{self.upload_url}/tx" if free else f"{self.gateway}/tx"
        headers = {
            "Content-Type": "application/octet-stream",
            "X-Owner": signer.owner,
            "X-Signature": b64url_encode(signature),
            "X-Tags": json.dumps(tags, separators=(",", ":")),
        }
        log.debug("uploading %d bytes to %s (%s)", size, url, "free tier" if free else f"{cost} winston")
        resp = self._check(self._call("POST", url, content=data, headers=headers), url)

        try:
            body = resp.json()
        except json.JSONDecodeError:
            body = None
        returned = body.get("id") if isinstance(body, dict) else None
        if isinstance(returned, str) and is_valid_content_id(returned):
            content_id = returned
        return UploadResult(content_id=content_id, cost=cost, size=size, free_tier=free)

    # -- download ---------------------------------------------------------

    def download(self, content_id: str, *, on_progress: Callable[[DownloadProgress], None] | None = None) -> bytes:
        if not is_valid_content_id(content_id):
            raise ValidationError(f"Invalid content identifier: {content_id!r} (expected 43 base64url characters).")
        url = f"{self.gateway}/{content_id}"

        def _once() -> bytes:
            with self._http.stream("GET", url, timeout=self.timeout_s) as resp:
                if resp.status_code in RETRY_STATUSES:
                    resp.raise_for_status()
                if resp.status_code == 404:
                    raise NetworkError(
                        f"Bundle {content_id} not found on {self.gateway}.",
                        error_type=NetworkError.NOT_FOUND,
                        endpoint=url,
                        status_code=404,
                        hint="Wait a few minutes and retry; the network may still be propagating a recent upload.",
                    )
                if resp.status_code >= 400:
                    raise NetworkError(
                        f"Gateway returned HTTP {resp.status_code} for {url}",
                        error_type=NetworkError.GATEWAY_ERROR,
                        endpoint=url,
                        status_code=resp.status_code,
                    )
                ctype = _media_type(resp.headers.get("content-type", ""))
                if ctype not in ARCHIVE_CONTENT_TYPES:
                    raise ValidationError(
                        f"Content {content_id} has type {ctype or 'unknown'!r}, not a skill bundle.",
                        hint="Check that the content identifier points to a published skill bundle.",
                    )
                total_s = resp.headers.get("content-length")
                total = int(total_s) if total_s and total_s.isdigit() else None
                buf = bytearray()
                for chunk in resp.iter_bytes(_CHUNK):
                    buf.extend(chunk)
                    if on_progress is not None:
                        on_progress(DownloadProgress(received=len(buf), total=total))
                return bytes(buf)

        try:
            return self._policy.run(_once, label=f"download {content_id}")
        except httpx.HTTPError as e:
            raise _to_network_error(e, url) from e

    # -- durability -------------------------------------------------------

    def check_status(self, content_id: str) -> DurabilityState:
        url = f"{self.gateway}/tx/{content_id}/status"
        resp = self._call("GET", url)
        if resp.status_code == 404:
            return DurabilityState.PENDING
        if resp.status_code >= 400:
            log.debug("status check for %s returned HTTP %d", content_id, resp.status_code)
            return DurabilityState.FAILED
        try:
            body = resp.json()
        except json.JSONDecodeError:
            # Gateways answer "Pending" as plain text while the item is unconfirmed.
            return DurabilityState.PENDING
        if not isinstance(body, dict):
            return DurabilityState.PENDING
        if int(body.get("number_of_confirmations") or 0) > 0:
            return DurabilityState.CONFIRMED
        if body.get("block_height") is not None:
            return DurabilityState.CONFIRMING
        return DurabilityState.PENDING

    def poll_durability(
        self,
        content_id: str,
        *,
        timeout_s: float = DURABILITY_TIMEOUT_S,
        interval_s: float = DURABILITY_INTERVAL_S,
        on_state: Callable[[DurabilityState], None] | None = None,
    ) -> bool:
        """Return True once the upload is confirmed, False on failure or when `timeout_s` elapses."""
        deadline = self._clock() + timeout_s
        while True:
            try:
                state = self.check_status(content_id)
            except NetworkError as e:
                log.warning("status check for %s failed: %s", content_id, e)
                state = DurabilityState.PENDING
            if on_state is not None:
                on_state(state)
            if state is DurabilityState.CONFIRMED:
                return True
            if state is DurabilityState.FAILED:
                return False
            if self._clock() + interval_s > deadline:
                return False
            self._sleep(interval_s)
