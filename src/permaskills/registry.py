from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Callable, Iterable

import httpx

from .cache import MISSING, TTLCache
from .config import DEFAULT_CU_URL, DEFAULT_MU_URL, DEFAULT_TIMEOUT_S
from .errors import ConfigurationError, NetworkError, RegistryRejectedError, ValidationError
from .models import (
    Failed,
    Found,
    NotFound,
    RegistrationReceipt,
    RegistryPage,
    RegistryResult,
    SkillMetadata,
)
from .retry import RetryPolicy
from .signing import Signer, b64url_encode

log = logging.getLogger(__name__)

CACHE_TTL_S = 5 * 60
READ_ATTEMPTS = 3
READ_RETRY_DELAY_S = 8.0

# Dryrun reads are unauthenticated; the registry only looks at Owner for writes.
ANONYMOUS_OWNER = "1234"

SUCCESS_ACTIONS = ("Skill-Registered", "Skill-Updated")


def _retryable_read(e: BaseException) -> bool:
    if not isinstance(e, NetworkError):
        return False
    if e.error_type == NetworkError.CONNECTION_FAILURE:
        return True
    return e.error_type == NetworkError.GATEWAY_ERROR and (e.status_code is None or e.status_code >= 500)


def _tags_to_dict(tags: Any) -> dict[str, str]:
    out: dict[str, str] = {}
    if isinstance(tags, dict):
        return {str(k): str(v) for k, v in tags.items()}
    if isinstance(tags, list):
        for t in tags:
            if isinstance(t, dict) and "name" in t:
                out[str(t["name"])] = str(t.get("value", ""))
    return out


def _parse_data(data: Any) -> Any:
    if isinstance(data, str):
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            return data
    return data


def decode_messages(body: Any) -> RegistryResult:
    """Turn a dryrun/result response into Found/NotFound/Failed."""
    if not isinstance(body, dict):
        return Failed(f"Unexpected registry response: {body!r}")
    if body.get("Error"):
        return Failed(str(body["Error"]))
    messages = body.get("Messages") or []
    if not messages:
        return NotFound()

    msg = messages[0]
    tags = _tags_to_dict(msg.get("Tags"))
    action = tags.get("Action")
    if action == "Error":
        text = tags.get("Error") or str(msg.get("Data") or "") or "Registry returned an error"
        if "not found" in text.lower():
            return NotFound(text)
        return Failed(text)

    payload = _parse_data(msg.get("Data"))
    if isinstance(payload, dict) and payload.get("status") == 404:
        return NotFound(str(payload.get("error") or ""))
    if isinstance(payload, dict) and payload.get("error"):
        return Failed(str(payload["error"]))
    if payload in (None, "") and action not in SUCCESS_ACTIONS:
        return NotFound()
    return Found(payload=payload if payload not in (None, "") else tags, action=action)


def _skills_from(payload: Any) -> list[SkillMetadata]:
    items = payload.get("skills") if isinstance(payload, dict) else payload
    out: list[SkillMetadata] = []
    for obj in items or []:
        try:
            out.append(SkillMetadata.from_payload(obj))
        except ValidationError:
            log.debug("skipping malformed registry entry: %r", obj)
    return out


class RegistryClient:
    """
    Client for the registry process.

    Reads are dryruns against the compute unit; they are bounded by `timeout_s`, retried on
    connection failures and server errors with a fixed delay, and `search`/`get_skill`
    answers are cached for five minutes. Writes are signed messages sent once to the
    messenger unit.
    """

    def __init__(
        self,
        process_id: str,
        *,
        cu_url: str = DEFAULT_CU_URL,
        mu_url: str = DEFAULT_MU_URL,
        signer: Signer | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        cache_ttl_s: float = CACHE_TTL_S,
    ) -> None:
        self.process_id = process_id
        self.cu_url = cu_url.rstrip("/")
        self.mu_url = mu_url.rstrip("/")
        self.signer = signer
        self.timeout_s = timeout_s
        self._http = http or httpx.Client(timeout=timeout_s, follow_redirects=True)
        self._sleep = sleep
        self._clock = clock
        self._cache: TTLCache[RegistryResult] = TTLCache(cache_ttl_s, clock=clock)
        self._read_policy = RetryPolicy(
            max_attempts=READ_ATTEMPTS,
            base_delay_s=READ_RETRY_DELAY_S,
            multiplier=1.0,
            retryable=_retryable_read,
            sleep=sleep,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def clear_cache(self) -> None:
        self._cache.clear()

    # -- transport --------------------------------------------------------

    def _timed_out(self, url: str) -> NetworkError:
        return NetworkError(
            f"Registry request timed out after {self.timeout_s:g}s: {url}",
            error_type=NetworkError.TIMEOUT,
            endpoint=url,
            hint="The registry may be busy; try again in a minute.",
        )

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        # httpx timeouts bound each phase; the deadline bounds the whole request.
        deadline = self._clock() + self.timeout_s
        try:
            with self._http.stream(method, url, timeout=self.timeout_s, **kwargs) as streamed:
                raw = bytearray()
                for chunk in streamed.iter_raw():
                    raw.extend(chunk)
                    if self._clock() > deadline:
                        raise self._timed_out(url)
                resp = httpx.Response(
                    streamed.status_code,
                    headers=streamed.headers,
                    content=bytes(raw),
                    request=streamed.request,
                )
        except httpx.TimeoutException as e:
            raise self._timed_out(url) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                f"Could not reach registry: {e}",
                error_type=NetworkError.CONNECTION_FAILURE,
                endpoint=url,
                hint="Check your network connection.",
            ) from e
        if resp.status_code >= 400:
            raise NetworkError(
                f"Registry returned HTTP {resp.status_code}: {resp.text[:500]}",
                error_type=NetworkError.GATEWAY_ERROR,
                endpoint=url,
                status_code=resp.status_code,
            )
        return resp

    @staticmethod
    def _json(resp: httpx.Response, url: str) -> Any:
        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise NetworkError(
                f"Registry returned a non-JSON response: {resp.text[:200]}",
                error_type=NetworkError.GATEWAY_ERROR,
                endpoint=url,
                status_code=resp.status_code,
            ) from e

    def dryrun(self, action: str, tags: dict[str, str] | None = None, data: str = "") -> RegistryResult:
        url = f"{self.cu_url}/dry-run"
        all_tags = {"Action": action, **(tags or {})}
        body = {
            "Target": self.process_id,
            "Owner": self.signer.address if self.signer else ANONYMOUS_OWNER,
            "Tags": [{"name": k, "value": str(v)} for k, v in all_tags.items()],
            "Data": data,
        }

        def _once() -> RegistryResult:
            resp = self._request("POST", url, params={"process-id": self.process_id}, json=body)
            return decode_messages(self._json(resp, url))

        log.debug("dryrun %s %s", action, tags or {})
        return self._read_policy.run(_once, label=f"registry {action}")

    def _cached(self, key: tuple[Any, ...], fetch: Callable[[], RegistryResult]) -> RegistryResult:
        hit = self._cache.get(key)
        if hit is not MISSING:
            log.debug("registry cache hit: %s", key)
            return hit  # type: ignore[return-value]
        result = fetch()
        if not isinstance(result, Failed):
            self._cache.set(key, result)
        return result

    @staticmethod
    def _raise_failed(result: Failed, action: str) -> None:
        raise NetworkError(f"Registry {action} failed: {result.message}", error_type=NetworkError.GATEWAY_ERROR)

    # -- reads ------------------------------------------------------------

    def search(self, query: str = "") -> list[SkillMetadata]:
        result = self._cached(("search", query), lambda: self.dryrun("Search-Skills", {"Query": query}))
        if isinstance(result, Failed):
            self._raise_failed(result, "search")
        if isinstance(result, NotFound):
            return []
        return _skills_from(result.payload)

    def get_skill(self, name: str, version: str | None = None) -> SkillMetadata | None:
        """Metadata for `name` (latest) or `name@version`; None when the registry does not know it."""
        tags = {"Name": name}
        if version:
            tags["Version"] = version
        result = self._cached(("get", name, version), lambda: self.dryrun("Get-Skill", tags))
        if isinstance(result, Failed):
            self._raise_failed(result, "lookup")
        if isinstance(result, NotFound):
            return None
        return SkillMetadata.from_payload(result.payload)

    def get_versions(self, name: str) -> list[str]:
        result = self.dryrun("Get-Skill-Versions", {"Name": name})
        if isinstance(result, Failed):
            self._raise_failed(result, "version listing")
        if isinstance(result, NotFound):
            return []
        payload = result.payload
        items = payload.get("versions") if isinstance(payload, dict) else payload
        out: list[str] = []
        for item in items or []:
            if isinstance(item, str):
                out.append(item)
            elif isinstance(item, dict) and isinstance(item.get("version"), str):
                out.append(item["version"])
        return out

    def list_skills(
        self,
        *,
        limit: int = 10,
        offset: int = 0,
        author: str | None = None,
        tags: Iterable[str] | None = None,
        name_filter: str | None = None,
    ) -> RegistryPage:
        req: dict[str, str] = {"Limit": str(limit), "Offset": str(offset)}
        if author:
            req["Author"] = author
        tag_list = list(tags or [])
        if tag_list:
            req["FilterTags"] = json.dumps(tag_list)
        if name_filter:
            req["FilterName"] = name_filter
        result = self.dryrun("List-Skills", req)
        if isinstance(result, Failed):
            self._raise_failed(result, "listing")
        if isinstance(result, NotFound):
            return RegistryPage(skills=(), total=0, limit=limit, offset=offset, has_next_page=False)
        payload = result.payload if isinstance(result.payload, dict) else {"skills": result.payload}
        skills = tuple(_skills_from(payload))
        pagination = payload.get("pagination") or {}
        total = int(pagination.get("total", len(skills)))
        return RegistryPage(
            skills=skills,
            total=total,
            limit=int(pagination.get("limit", limit)),
            offset=int(pagination.get("offset", offset)),
            has_next_page=bool(pagination.get("hasNextPage", offset + len(skills) < total)),
        )

    def info(self) -> dict[str, Any]:
        result = self.dryrun("Info")
        if isinstance(result, Failed):
            self._raise_failed(result, "info")
        if isinstance(result, NotFound):
            return {}
        return result.payload if isinstance(result.payload, dict) else {"info": result.payload}

    # -- writes -----------------------------------------------------------

    def _send(self, action: str, tags: dict[str, str], data: str = "") -> str:
        if self.signer is None:
            raise ConfigurationError("A wallet is required to write to the registry.", key="wallet", hint="Pass --wallet.")
        all_tags = [{"name": "Action", "value": action}] + [{"name": k, "value": v} for k, v in tags.items()]
        unsigned = {"Target": self.process_id, "Owner": self.signer.owner, "Tags": all_tags, "Data": data}
        signature = self.signer.sign(json.dumps(unsigned, sort_keys=True, separators=(",", ":")).encode("utf-8"))
        message_id = b64url_encode(hashlib.sha256(signature).digest())
        body = {**unsigned, "Signature": b64url_encode(signature), "Id": message_id}

        url = f"{self.mu_url}/"
        log.debug("sending %s for %s", action, tags.get("Name"))
        resp = self._request("POST", url, json=body)
        try:
            returned = resp.json()
        except json.JSONDecodeError:
            returned = None
        if isinstance(returned, dict) and isinstance(returned.get("id"), str):
            return returned["id"]
        return message_id

    @staticmethod
    def _write_tags(metadata: SkillMetadata) -> dict[str, str]:
        tags = {
            "Name": metadata.name,
            "Version": metadata.version,
            "Description": metadata.description,
            "Author": metadata.author,
            "Tags": json.dumps(list(metadata.tags)),
            "ArweaveTxId": metadata.content_id,
            "Dependencies": json.dumps([str(d) for d in metadata.dependencies]),
        }
        if metadata.license:
            tags["License"] = metadata.license
        return tags

    def register_skill(self, metadata: SkillMetadata) -> str:
        message_id = self._send("Register-Skill", self._write_tags(metadata))
        self._cache.clear()
        return message_id

    def update_skill(self, metadata: SkillMetadata) -> str:
        message_id = self._send("Update-Skill", self._write_tags(metadata))
        self._cache.clear()
        return message_id

    def read_result(self, message_id: str, *, wait_s: float = 30.0, poll_interval_s: float = 2.0) -> RegistrationReceipt:
        url = f"{self.cu_url}/result/{message_id}"
        deadline = self._clock() + wait_s
        while True:
            try:
                resp = self._request("GET", url, params={"process-id": self.process_id})
                body = self._json(resp, url)
            except NetworkError as e:
                if e.status_code != 404:
                    raise
                body = {}
            receipt = self._receipt_from(body, message_id, url)
            if receipt is not None:
                return receipt
            if self._clock() >= deadline:
                raise NetworkError(
                    f"No response from registry for message {message_id} within {wait_s:g}s.",
                    error_type=NetworkError.TIMEOUT,
                    endpoint=url,
                    hint="The message was sent; check the registry later with `skills info`.",
                )
            self._sleep(poll_interval_s)

    @staticmethod
    def _receipt_from(body: Any, message_id: str, url: str) -> RegistrationReceipt | None:
        if not isinstance(body, dict):
            return None
        if body.get("Error"):
            raise RegistryRejectedError(f"Registry rejected the message: {body['Error']}", endpoint=url)
        for msg in body.get("Messages") or []:
            tags = _tags_to_dict(msg.get("Tags"))
            action = tags.get("Action")
            if action == "Error":
                raise RegistryRejectedError(f"Registry rejected the message: {tags.get('Error') or msg.get('Data')}", endpoint=url)
            if action in SUCCESS_ACTIONS:
                return RegistrationReceipt(
                    message_id=message_id,
                    name=tags.get("Name", ""),
                    version=tags.get("Version", ""),
                    action=action,
                )
        return None
