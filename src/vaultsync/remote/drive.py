"""Google Drive v3 REST client for the remote object store.

Every object of a vault lives below one root folder and carries its
canonical local path in ``properties.path``. Queries are scoped to the
vault through ``properties.vault``.

No method raises for an expected failure: each returns ``None`` (or
``False``) and logs the cause. Transient failures (429, 5xx, transport
errors) are retried with exponential backoff before giving up.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Iterable
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vaultsync.models import RemoteChange, RemoteObject, SyncConfig
from vaultsync.remote.auth import TokenManager

logger = logging.getLogger(__name__)

API_URL = "https://www.googleapis.com/drive/v3"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
FILE_FIELDS = "id, name, mimeType, modifiedTime, properties"

MAX_ATTEMPTS = 5


class TransientHTTPError(Exception):
    """A response worth retrying (429, 5xx or an expired token)."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def property_clause(key: str, value: str) -> str:
    return f"properties has {{ key={_quote(key)} and value={_quote(value)} }}"


def build_query(
    vault_name: str,
    matches: Iterable[dict[str, str]] | None = None,
    modified_after: str | None = None,
) -> str:
    """Compose a Drive ``q`` expression.

    Each dict in *matches* is an AND of property clauses; the dicts are
    OR-ed together. Trashed objects are always excluded.
    """
    clauses = [property_clause("vault", vault_name), "trashed = false"]
    groups = [
        "(" + " and ".join(property_clause(k, v) for k, v in sorted(match.items())) + ")"
        for match in (matches or [])
        if match
    ]
    if groups:
        clauses.append("(" + " or ".join(groups) + ")")
    if modified_after:
        clauses.append(f"modifiedTime > {_quote(modified_after)}")
    return " and ".join(clauses)


def is_hidden_path(path: str) -> bool:
    return any(part.startswith(".") for part in path.split("/"))


def _to_remote_object(data: dict[str, Any]) -> RemoteObject:
    return RemoteObject(
        id=data["id"],
        is_folder=data.get("mimeType") == FOLDER_MIME_TYPE,
        properties=dict(data.get("properties") or {}),
        modified_time=data.get("modifiedTime"),
        name=data.get("name"),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class DriveClient:
    """Async Drive v3 client implementing the remote store operations.

    Usage::

        async with httpx.AsyncClient() as http:
            tokens = TokenManager(refresh_token, config, http)
            drive = DriveClient(config, tokens, http)
            root_id = await drive.get_root_folder_id()

    Args:
        config: Sync configuration (vault name, concurrency, timeouts).
        tokens: Access-token source; ``None`` sends unauthenticated requests.
        http: Shared ``httpx.AsyncClient``; one is created when omitted.
        retry_wait: Backoff multiplier in seconds (0 disables sleeping).
    """

    def __init__(
        self,
        config: SyncConfig,
        tokens: TokenManager | None = None,
        http: httpx.AsyncClient | None = None,
        *,
        api_url: str = API_URL,
        upload_url: str = UPLOAD_URL,
        retry_wait: float = 1.0,
    ) -> None:
        self._config = config
        self._tokens = tokens
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=config.request_timeout)
        self._api_url = api_url
        self._upload_url = upload_url
        self._retry_wait = retry_wait
        self._root_id: str | None = None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def ensure_token(self) -> bool:
        if self._tokens is None:
            return True
        return await self._tokens.ensure_valid()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        allow_statuses: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response | None:
        """Send one request with retries; ``None`` on any failure."""
        if not await self.ensure_token():
            logger.error("No valid access token for %s %s", method, url)
            return None

        extra_headers = kwargs.pop("headers", None) or {}
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(MAX_ATTEMPTS),
                wait=wait_exponential(multiplier=self._retry_wait, max=30),
                retry=retry_if_exception_type((httpx.TransportError, TransientHTTPError)),
                reraise=True,
            ):
                with attempt:
                    headers = dict(extra_headers)
                    if self._tokens is not None:
                        headers.update(self._tokens.headers)
                    response = await self._http.request(method, url, headers=headers, **kwargs)
                    if response.status_code == 401 and self._tokens is not None:
                        await self._tokens.refresh()
                        raise TransientHTTPError(response)
                    if response.status_code == 429 or response.status_code >= 500:
                        logger.warning(
                            "%s %s -> %d (attempt %d)",
                            method,
                            url,
                            response.status_code,
                            attempt.retry_state.attempt_number,
                        )
                        raise TransientHTTPError(response)
                    if response.status_code >= 400 and response.status_code not in allow_statuses:
                        logger.error(
                            "%s %s -> %d: %s", method, url, response.status_code, response.text[:200]
                        )
                        return None
                    return response
        except TransientHTTPError as exc:
            logger.error("%s %s failed after retries: %s", method, url, exc)
            return None
        except httpx.HTTPError as exc:
            logger.error("%s %s failed: %s", method, url, exc)
            return None
        # reraise=True: the loop above always returns or raises.
        raise RuntimeError(f"{method} {url}: retry loop ended without an outcome")

    # ------------------------------------------------------------------
    # Connectivity and root
    # ------------------------------------------------------------------

    async def check_connection(self) -> bool:
        """Lightweight reachability check."""
        try:
            await self._http.get(self._config.connectivity_url)
        except httpx.HTTPError as exc:
            logger.warning("Connectivity check failed: %s", exc)
            return False
        return True

    async def get_root_folder_id(self) -> str | None:
        """Find or lazily create the vault's root folder."""
        if self._root_id is not None:
            return self._root_id

        q = " and ".join(
            [
                f"mimeType = {_quote(FOLDER_MIME_TYPE)}",
                property_clause("vaultRoot", "true"),
                f"name = {_quote(self._config.vault_name or '')}",
                "trashed = false",
            ]
        )
        resp = await self._request("GET", f"{self._api_url}/files", params={"q": q, "fields": "files(id)"})
        if resp is None:
            return None
        files = resp.json().get("files") or []
        if files:
            self._root_id = files[0]["id"]
            return self._root_id

        resp = await self._request(
            "POST",
            f"{self._api_url}/files",
            params={"fields": "id"},
            json={
                "name": self._config.vault_name,
                "mimeType": FOLDER_MIME_TYPE,
                "properties": {"vaultRoot": "true"},
            },
        )
        if resp is None:
            return None
        self._root_id = resp.json()["id"]
        logger.info("Created remote root folder %s (%s)", self._config.vault_name, self._root_id)
        return self._root_id

    def _properties(self, properties: dict[str, str] | None) -> dict[str, str]:
        props = dict(properties or {})
        props["vault"] = self._config.vault_name or ""
        if is_hidden_path(props.get("path", "")):
            props["hidden"] = "true"
        return props

    async def _parent_or_root(self, parent: str | None) -> str | None:
        return parent if parent else await self.get_root_folder_id()

    # ------------------------------------------------------------------
    # Create / update / delete
    # ------------------------------------------------------------------

    async def create_folder(
        self,
        name: str,
        parent: str | None = None,
        properties: dict[str, str] | None = None,
        modified_time: str | None = None,
    ) -> str | None:
        parent_id = await self._parent_or_root(parent)
        if parent_id is None:
            return None
        metadata: dict[str, Any] = {
            "name": name,
            "mimeType": FOLDER_MIME_TYPE,
            "parents": [parent_id],
            "properties": self._properties(properties),
        }
        if modified_time:
            metadata["modifiedTime"] = modified_time
        resp = await self._request("POST", f"{self._api_url}/files", params={"fields": "id"}, json=metadata)
        if resp is None:
            return None
        folder_id = resp.json()["id"]
        logger.debug("Created folder %s -> %s", metadata["properties"].get("path", name), folder_id)
        return folder_id

    async def upload_file(
        self,
        content: bytes,
        name: str,
        parent: str | None = None,
        properties: dict[str, str] | None = None,
        modified_time: str | None = None,
    ) -> str | None:
        parent_id = await self._parent_or_root(parent)
        if parent_id is None:
            return None
        metadata: dict[str, Any] = {
            "name": name,
            "parents": [parent_id],
            "properties": self._properties(properties),
        }
        if modified_time:
            metadata["modifiedTime"] = modified_time
        body, content_type = _multipart(metadata, content)
        resp = await self._request(
            "POST",
            f"{self._upload_url}/files",
            params={"uploadType": "multipart", "fields": "id"},
            content=body,
            headers={"Content-Type": content_type},
        )
        if resp is None:
            return None
        file_id = resp.json()["id"]
        logger.debug("Uploaded %s (%d bytes) -> %s", metadata["properties"].get("path", name), len(content), file_id)
        return file_id

    async def update_file(
        self,
        file_id: str,
        content: bytes | None = None,
        modified_time: str | None = None,
    ) -> str | None:
        metadata: dict[str, Any] = {}
        if modified_time:
            metadata["modifiedTime"] = modified_time
        if content is None:
            resp = await self._request(
                "PATCH", f"{self._api_url}/files/{file_id}", params={"fields": "id"}, json=metadata
            )
        else:
            body, content_type = _multipart(metadata, content)
            resp = await self._request(
                "PATCH",
                f"{self._upload_url}/files/{file_id}",
                params={"uploadType": "multipart", "fields": "id"},
                content=body,
                headers={"Content-Type": content_type},
            )
        if resp is None:
            return None
        return resp.json().get("id", file_id)

    async def batch_delete(self, ids: Iterable[str]) -> bool:
        """Delete objects concurrently. A missing object counts as deleted."""
        ids = list(dict.fromkeys(ids))
        if not ids:
            return True
        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrency))

        async def _delete(file_id: str) -> bool:
            async with semaphore:
                resp = await self._request(
                    "DELETE", f"{self._api_url}/files/{file_id}", allow_statuses=(404,)
                )
                return resp is not None

        results = await asyncio.gather(*(_delete(i) for i in ids))
        failed = [i for i, ok in zip(ids, results) if not ok]
        if failed:
            logger.error("Failed to delete %d of %d remote objects", len(failed), len(ids))
            return False
        logger.debug("Deleted %d remote objects", len(ids))
        return True

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_file(self, file_id: str) -> bytes | None:
        resp = await self._request("GET", f"{self._api_url}/files/{file_id}", params={"alt": "media"})
        return resp.content if resp is not None else None

    async def get_file_metadata(self, file_id: str) -> RemoteObject | None:
        resp = await self._request("GET", f"{self._api_url}/files/{file_id}", params={"fields": FILE_FIELDS})
        return _to_remote_object(resp.json()) if resp is not None else None

    async def search_files(
        self,
        matches: Iterable[dict[str, str]] | None = None,
        modified_after: str | None = None,
    ) -> list[RemoteObject] | None:
        """List vault objects matching property filters and/or an mtime bound."""
        params = {
            "q": build_query(self._config.vault_name or "", matches, modified_after),
            "fields": f"nextPageToken, files({FILE_FIELDS})",
            "pageSize": "1000",
        }
        objects: list[RemoteObject] = []
        while True:
            resp = await self._request("GET", f"{self._api_url}/files", params=params)
            if resp is None:
                return None
            data = resp.json()
            objects.extend(_to_remote_object(f) for f in data.get("files") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                return objects
            params["pageToken"] = page_token

    async def search_hidden_files(self) -> list[RemoteObject] | None:
        """Objects whose path contains a dot-prefixed segment."""
        return await self.search_files([{"hidden": "true"}])

    # ------------------------------------------------------------------
    # Changes feed
    # ------------------------------------------------------------------

    async def get_changes_start_token(self) -> str | None:
        resp = await self._request("GET", f"{self._api_url}/changes/startPageToken")
        if resp is None:
            return None
        return resp.json().get("startPageToken")

    async def get_changes(self, token: str) -> list[RemoteChange] | None:
        """All changes since *token*; trashed objects count as removed."""
        if not token:
            return []
        changes: list[RemoteChange] = []
        page_token: str | None = token
        while page_token:
            resp = await self._request(
                "GET",
                f"{self._api_url}/changes",
                params={
                    "pageToken": page_token,
                    "includeRemoved": "true",
                    "fields": "nextPageToken, newStartPageToken, changes(fileId, removed, file(trashed))",
                },
            )
            if resp is None:
                return None
            data = resp.json()
            for change in data.get("changes") or []:
                trashed = bool((change.get("file") or {}).get("trashed"))
                changes.append(
                    RemoteChange(file_id=change["fileId"], removed=bool(change.get("removed")) or trashed)
                )
            page_token = data.get("nextPageToken")
        return changes


def _multipart(metadata: dict[str, Any], content: bytes) -> tuple[bytes, str]:
    """Build a ``multipart/related`` body of JSON metadata plus media."""
    boundary = f"vaultsync-{uuid.uuid4().hex}"
    head = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        "Content-Type: application/octet-stream\r\n\r\n"
    ).encode()
    tail = f"\r\n--{boundary}--".encode()
    return head + content + tail, f"multipart/related; boundary={boundary}"
