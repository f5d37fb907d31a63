"""REST record source over aiohttp."""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from mandisync.exceptions import SourceTransportError
from mandisync.ingestion.records import parse_records
from mandisync.models.record import Record

_logger = logging.getLogger(__name__)


class HttpRecordSource:
    """Fetch collections with ``GET {base_url}/{path}``.

    The response body may be a JSON list of records or an object wrapping
    it as ``{"data": [...]}``.
    """

    def __init__(
        self,
        base_url: str,
        http_session: aiohttp.ClientSession,
        *,
        timeout: float = 15.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def url_for(self, path: str) -> str:
        return f"{self._base_url}/{path.strip('/')}"

    async def fetch_json(self, path: str) -> Any:
        """GET *path* and decode the JSON body.

        Raises
        ------
        SourceTransportError
            Network failure, timeout, non-2xx status or invalid JSON.
        """
        url = self.url_for(path)
        headers = {"accept": "application/json"}
        _logger.debug("GET %s", url)

        try:
            async with self._http.get(url, headers=headers, timeout=self._timeout) as resp:
                text = await resp.text()
                if resp.status >= 300:
                    raise SourceTransportError(
                        f"HTTP {resp.status} from {path}: {text[:200]}",
                        status_code=resp.status,
                        path=path,
                    )
        except SourceTransportError:
            raise
        except aiohttp.ClientError as exc:
            raise SourceTransportError(f"Request to {path} failed: {exc}", path=path) from exc
        except TimeoutError as exc:
            raise SourceTransportError(f"Request to {path} timed out", path=path) from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise SourceTransportError(f"Invalid JSON from {path}: {text[:200]}", path=path) from exc

    async def fetch_collection(self, path: str) -> list[Record]:
        body = await self.fetch_json(path)
        if isinstance(body, dict) and isinstance(body.get("data"), list):
            items = body["data"]
        elif isinstance(body, list):
            items = body
        else:
            raise SourceTransportError(f"Unexpected collection payload from {path}", path=path)

        records = parse_records(items)
        _logger.debug("Fetched %d records from %s", len(records), path)
        return records
