"""Upstream identity fetcher.

Brief:
  Retrieves the server identity (Id and ServerName) from the Jellyfin
  ``/System/Info/Public`` endpoint with a single bounded-timeout GET. There
  are no retries here; the discovery handler simply tries again on the next
  incoming discovery request.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import DecodeError, TransportError, UpstreamStatusError

logger = logging.getLogger(__name__)

SYSTEM_INFO_PATH = "/System/Info/Public"
DEFAULT_TIMEOUT_SECONDS = 5.0
# Small reads so the overall deadline is checked while a slow body trickles in.
READ_CHUNK_SIZE = 1
MAX_BODY_BYTES = 1024 * 1024


class UpstreamIdentity(BaseModel):
    """Immutable identity of the upstream media server.

    Inputs:
      - Id: Opaque server identifier string.
      - ServerName: Human-readable server name.

    Outputs:
      - Frozen model; fields are also reachable as ``id`` and ``name``.

    Example:
      >>> ident = UpstreamIdentity.model_validate({"Id": "abc", "ServerName": "Home", "Version": "10.9"})
      >>> (ident.id, ident.name)
      ('abc', 'Home')
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(alias="Id")
    name: str = Field(alias="ServerName")


class UpstreamFetcher:
    """
    Fetches UpstreamIdentity records over HTTP.

    Example use:
        >>> fetcher = UpstreamFetcher(timeout=5.0)
        >>> fetcher.fetch("http://localhost:8096")  # doctest: +SKIP
        UpstreamIdentity(id='...', name='...')
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout = float(timeout)

    def info_url(self, base_url: str) -> str:
        return f"{str(base_url).rstrip('/')}{SYSTEM_INFO_PATH}"

    def fetch(self, base_url: str) -> UpstreamIdentity:
        """Brief: GET ``<base_url>/System/Info/Public`` and parse the identity.

        Inputs:
          - base_url: Upstream server base URL (scheme://host[:port][/prefix]).

        Outputs:
          - UpstreamIdentity parsed from the JSON body.

        Raises:
          - TransportError: connection refused, DNS failure, or the whole
            request (connect, headers and body) exceeding ``timeout``.
          - UpstreamStatusError: any status other than 200.
          - DecodeError: body is not a JSON object with string Id/ServerName.
        """

        url = self.info_url(base_url)
        logger.info("Fetching server info from: %s", url)
        deadline = time.monotonic() + self.timeout
        try:
            resp = requests.get(url, timeout=self.timeout, stream=True)
        except requests.RequestException as exc:
            logger.debug("HTTP request error type: %s", type(exc).__name__)
            raise TransportError(f"HTTP request to {url} failed: {exc}") from exc

        try:
            logger.debug("HTTP response status: %d", resp.status_code)
            if resp.status_code != 200:
                raise UpstreamStatusError(resp.status_code, url)
            raw = self._read_body(resp, url, deadline)
        finally:
            resp.close()

        try:
            body: Any = json.loads(raw)
        except ValueError as exc:
            raise DecodeError(f"failed to parse JSON response: {exc}") from exc

        if not isinstance(body, dict):
            raise DecodeError(
                f"expected a JSON object from {url}, got {type(body).__name__}"
            )
        identity = self._parse(body)
        logger.info(
            "Successfully retrieved server info from API (Server: %s, ID: %s)",
            identity.name,
            identity.id,
        )
        return identity

    def _read_body(self, resp: requests.Response, url: str, deadline: float) -> bytes:
        """Read the streamed body, raising TransportError once ``deadline`` passes."""

        chunks = []
        size = 0
        try:
            if time.monotonic() > deadline:
                raise TransportError(
                    f"HTTP request to {url} timed out after {self.timeout:.1f}s"
                )
            for chunk in resp.iter_content(chunk_size=READ_CHUNK_SIZE):
                if time.monotonic() > deadline:
                    raise TransportError(
                        f"HTTP request to {url} timed out after {self.timeout:.1f}s "
                        f"while reading the body"
                    )
                chunks.append(chunk)
                size += len(chunk)
                if size > MAX_BODY_BYTES:
                    raise DecodeError(
                        f"response body from {url} exceeds {MAX_BODY_BYTES} bytes"
                    )
        except requests.RequestException as exc:
            logger.debug("HTTP body read error type: %s", type(exc).__name__)
            raise TransportError(f"reading response from {url} failed: {exc}") from exc
        return b"".join(chunks)

    @staticmethod
    def _parse(body: Dict[str, Any]) -> UpstreamIdentity:
        try:
            return UpstreamIdentity.model_validate(body)
        except ValidationError as exc:
            raise DecodeError(f"invalid server info payload: {exc}") from exc
