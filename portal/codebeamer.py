"""CodeBeamer REST v3 client (Basic-Auth passthrough)."""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import requests

from .errors import DownstreamRejected, DownstreamUnavailable

logger = logging.getLogger("doowon-portal.codebeamer")

ITEMS_PAGE_SIZE = 25
MAX_PAGES = 100
PAGE_DELAY_SECONDS = 1.0
RATE_LIMIT_WAIT_SECONDS = 5.0
MAX_RATE_LIMIT_RETRIES = 10
PING_TIMEOUT_SECONDS = 5.0


def basic_token(username: str, password: str) -> str:
    return base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")


@dataclass(frozen=True)
class StagedFile:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class AttachmentResult:
    filename: str
    ok: bool
    error: str = ""
    attachment: Optional[Dict[str, Any]] = None

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"filename": self.filename, "success": self.ok}
        if self.error:
            out["error"] = self.error
        if self.attachment is not None:
            out["attachment"] = self.attachment
        return out


def _page_items(data: Any) -> List[Dict[str, Any]]:
    """Tracker item pages come back as a bare list or wrapped in itemRefs/items/data."""
    if isinstance(data, list):
        return data
    if isinstance(data, Mapping):
        for key in ("itemRefs", "items", "data"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


def _response_body(resp: requests.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


class CodeBeamerClient:
    def __init__(
        self,
        base_url: str,
        auth_token: str,
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep

    def _headers(self, *, json_body: bool = True) -> Dict[str, str]:
        h = {
            "Authorization": f"Basic {self.auth_token}",
            "accept": "application/json",
        }
        if json_body:
            h["Content-Type"] = "application/json"
        return h

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        files: Any = None,
        timeout: Optional[float] = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method,
                url,
                headers=self._headers(json_body=files is None),
                params=params,
                json=json,
                files=files,
                timeout=timeout or self.timeout,
            )
        except requests.Timeout as exc:
            logger.warning("%s %s timed out", method, url)
            raise DownstreamUnavailable(f"CodeBeamer timeout: {method} {url}") from exc
        except requests.RequestException as exc:
            logger.warning("%s %s failed: %s", method, url, exc)
            raise DownstreamUnavailable(f"CodeBeamer unreachable: {exc}") from exc

        logger.info("%s %s -> %s", method, url, resp.status_code)
        if resp.status_code >= 400:
            body = _response_body(resp)
            logger.error("CodeBeamer error %s for %s %s: %s", resp.status_code, method, url, body)
            raise DownstreamRejected(resp.status_code, body, f"CodeBeamer responded {resp.status_code} for {method} {path}")
        return resp

    def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        return _response_body(self._request(method, path, **kwargs))

    # -------------------------
    # read
    # -------------------------
    def ping(self) -> Dict[str, Any]:
        url = f"{self.base_url}/ping"
        try:
            resp = self.session.get(url, timeout=PING_TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            return {"success": False, "url": url, "error": str(exc), "message": "Codebeamer is not reachable"}
        if resp.status_code >= 500:
            return {"success": False, "url": url, "status": resp.status_code, "message": "Codebeamer is not reachable"}
        return {"success": True, "url": url, "status": resp.status_code, "message": "Codebeamer is reachable"}

    def list_projects(self) -> Any:
        return self._call("GET", "/api/v3/projects")

    def list_trackers(self, project_id: int) -> Any:
        return self._call("GET", f"/api/v3/projects/{int(project_id)}/trackers")

    def get_item(self, item_id: int) -> Dict[str, Any]:
        return self._call("GET", f"/api/v3/items/{int(item_id)}") or {}

    def list_items_page(self, tracker_id: int, page: int = 1, page_size: int = ITEMS_PAGE_SIZE) -> List[Dict[str, Any]]:
        data = self._call(
            "GET",
            f"/api/v3/trackers/{int(tracker_id)}/items",
            params={"page": int(page), "pageSize": int(page_size)},
        )
        return _page_items(data)

    def fetch_tracker_items(
        self,
        tracker_id: int,
        *,
        max_items: Optional[int] = None,
        include_fields: bool = False,
    ) -> List[Dict[str, Any]]:
        """Walk every page of a tracker.

        Stops on a short page, at `max_items`, or after MAX_PAGES pages. A 429
        waits RATE_LIMIT_WAIT_SECONDS and retries the same page.
        """
        items: List[Dict[str, Any]] = []
        page = 1
        rate_limited = 0
        while True:
            try:
                page_items = self.list_items_page(tracker_id, page, ITEMS_PAGE_SIZE)
            except DownstreamRejected as e:
                if e.status_code == 429 and rate_limited < MAX_RATE_LIMIT_RETRIES:
                    rate_limited += 1
                    logger.info("Rate limit hit, waiting %.0f seconds before retrying page %d", RATE_LIMIT_WAIT_SECONDS, page)
                    self._sleep(RATE_LIMIT_WAIT_SECONDS)
                    continue
                raise

            items.extend(page_items)
            has_more = len(page_items) == ITEMS_PAGE_SIZE
            page += 1

            if max_items is not None and len(items) >= max_items:
                logger.info("Reached maximum items limit (%d), stopping pagination", max_items)
                items = items[:max_items]
                break
            if page > MAX_PAGES:
                logger.warning("Reached maximum page limit (%d), stopping pagination", MAX_PAGES)
                break
            if not has_more:
                break
            self._sleep(PAGE_DELAY_SECONDS)

        logger.info("Fetched %d items from tracker %s across %d pages", len(items), tracker_id, page - 1)
        if include_fields:
            items = [self._with_fields(it) for it in items]
        return items

    def _with_fields(self, item: Dict[str, Any]) -> Dict[str, Any]:
        # itemRefs 는 id/name 만 가진다. 상세 필드가 필요하면 항목을 다시 읽는다.
        if "customFields" in item or item.get("id") is None:
            return item
        return self.get_item(int(item["id"]))

    # -------------------------
    # write
    # -------------------------
    def create_item(self, tracker_id: int, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return self._call("POST", f"/api/v3/trackers/{int(tracker_id)}/items", json=dict(payload)) or {}

    def update_fields(self, item_id: int, field_values: Iterable[Mapping[str, Any]]) -> Any:
        return self._call(
            "PUT",
            f"/api/v3/items/{int(item_id)}/fields",
            json={"fieldValues": [dict(fv) for fv in field_values]},
        )

    def delete_item(self, item_id: int) -> None:
        self._request("DELETE", f"/api/v3/items/{int(item_id)}")

    def upload_attachments(self, item_id: int, files: Iterable[StagedFile]) -> List[AttachmentResult]:
        """Upload files one by one so each file gets its own result."""
        results: List[AttachmentResult] = []
        for f in files:
            try:
                body = self._call(
                    "POST",
                    f"/api/v3/items/{int(item_id)}/attachments",
                    files={"attachments": (f.filename, f.content, f.content_type)},
                )
            except (DownstreamRejected, DownstreamUnavailable) as e:
                logger.warning("Attachment '%s' upload to item %s failed: %s", f.filename, item_id, e)
                results.append(AttachmentResult(f.filename, ok=False, error=str(e)))
                continue
            attachment = body[0] if isinstance(body, list) and body else body
            results.append(
                AttachmentResult(
                    f.filename,
                    ok=True,
                    attachment=attachment if isinstance(attachment, dict) else None,
                )
            )
        return results
