"""
GitHub contents API client for the backup document.

Only two calls are made against /repos/{owner}/{repo}/contents/{path}:
  GET  -> current document bytes + blob sha (the version token)
  PUT  -> new document, conditioned on the sha last seen (omitted on first write)

Env vars:
  GITHUB_API_URL          API root (default: https://api.github.com)
  BACKUP_FILE_PATH        file path inside the repository (default: data.json)
  BACKUP_BRANCH           branch to read/write (default: repository default branch)
  BACKUP_COMMIT_MESSAGE   commit message for each write (default: Backup update)
  SYNC_TIMEOUT            request timeout in seconds (default: 15)
"""
import logging
import os
import urllib.parse
from typing import Any, Dict, NamedTuple, Optional

import requests

from backup_codec import MalformedDocument, from_transport, to_transport

logger = logging.getLogger(__name__)

GITHUB_API_URL = os.environ.get("GITHUB_API_URL", "https://api.github.com")
BACKUP_FILE_PATH = os.environ.get("BACKUP_FILE_PATH", "data.json")
BACKUP_BRANCH = os.environ.get("BACKUP_BRANCH") or None
COMMIT_MESSAGE = os.environ.get("BACKUP_COMMIT_MESSAGE", "Backup update")
try:
    SYNC_TIMEOUT = float(os.environ.get("SYNC_TIMEOUT", "15"))
except ValueError:
    SYNC_TIMEOUT = 15.0

JSON_MEDIA_TYPE = "application/vnd.github.v3+json"
RAW_MEDIA_TYPE = "application/vnd.github.v3.raw"


class RemoteError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthFailure(RemoteError):
    """Token rejected, or the repository is not visible to it."""


class Conflict(RemoteError):
    """The remote document changed since its sha was fetched."""


class NetworkFailure(RemoteError):
    """Transport error or an unexpected response from the API."""


class RemoteDocument(NamedTuple):
    content: bytes
    sha: str


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        body = resp.json()
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
    except ValueError:
        pass
    text = (resp.text or "").strip()
    if len(text) > 200:
        text = text[:200] + "…"
    return text or f"HTTP {resp.status_code}"


class GitHubContentsClient:
    """Stateless wrapper around one backup file; credentials are supplied per instance."""

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        path: str = BACKUP_FILE_PATH,
        branch: Optional[str] = BACKUP_BRANCH,
        api_url: str = GITHUB_API_URL,
        timeout: float = SYNC_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.owner = owner
        self.repo = repo
        self.token = token
        self.path = path.lstrip("/")
        self.branch = branch
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def url(self) -> str:
        return "{}/repos/{}/{}/contents/{}".format(
            self.api_url,
            urllib.parse.quote(self.owner, safe=""),
            urllib.parse.quote(self.repo, safe=""),
            urllib.parse.quote(self.path, safe="/"),
        )

    def _headers(self, accept: str = JSON_MEDIA_TYPE) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": accept,
        }

    def _send(self, method: str, accept: str = JSON_MEDIA_TYPE, **kwargs) -> requests.Response:
        try:
            return self.session.request(
                method, self.url, headers=self._headers(accept), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise NetworkFailure(f"{method} {self.path} failed: {exc}") from exc

    @staticmethod
    def _raise_for_auth(resp: requests.Response):
        if resp.status_code in (401, 403):
            raise AuthFailure(_error_message_from_response(resp), resp.status_code)

    def fetch_current(self) -> Optional[RemoteDocument]:
        """Return the current document and its sha, or None when no backup exists yet."""
        params = {"ref": self.branch} if self.branch else None
        resp = self._send("GET", params=params)
        logger.debug("GET %s -> %s", self.path, resp.status_code)
        if resp.status_code == 404:
            return None
        self._raise_for_auth(resp)
        if resp.status_code != 200:
            raise NetworkFailure(_error_message_from_response(resp), resp.status_code)
        try:
            meta = resp.json()
        except ValueError as exc:
            raise NetworkFailure(f"Bad JSON from contents API: {exc}", resp.status_code) from exc
        if not isinstance(meta, dict) or meta.get("type", "file") != "file" or not isinstance(meta.get("sha"), str):
            raise MalformedDocument(f"{self.path} is not a file in {self.owner}/{self.repo}")

        encoding = meta.get("encoding")
        if encoding == "base64" and meta.get("content"):
            content = from_transport(meta["content"])
        elif meta.get("size", 0) == 0 and encoding == "base64":
            content = b""
        else:
            # Files over the inline limit come back with encoding "none".
            content = self._fetch_raw(params)
        return RemoteDocument(content=content, sha=meta["sha"])

    def _fetch_raw(self, params: Optional[Dict[str, Any]]) -> bytes:
        resp = self._send("GET", accept=RAW_MEDIA_TYPE, params=params)
        self._raise_for_auth(resp)
        if resp.status_code != 200:
            raise NetworkFailure(_error_message_from_response(resp), resp.status_code)
        return resp.content

    def write_document(self, content: bytes, sha: Optional[str] = None, message: str = COMMIT_MESSAGE) -> str:
        """Create or update the backup file and return the new sha.

        With sha=None the file is created; GitHub rejects that when the file
        already exists, which surfaces as Conflict like a stale sha does.
        """
        body: Dict[str, Any] = {"message": message, "content": to_transport(content)}
        if sha:
            body["sha"] = sha
        if self.branch:
            body["branch"] = self.branch
        resp = self._send("PUT", json=body)
        logger.debug("PUT %s (sha=%s) -> %s", self.path, sha or "none", resp.status_code)
        self._raise_for_auth(resp)
        if resp.status_code == 404:
            raise AuthFailure(
                f"Repository {self.owner}/{self.repo} not found or not writable with this token",
                resp.status_code,
            )
        if resp.status_code == 409:
            raise Conflict(_error_message_from_response(resp), resp.status_code)
        if resp.status_code == 422:
            message_text = _error_message_from_response(resp)
            if "sha" in message_text.lower():
                raise Conflict(message_text, resp.status_code)
            raise NetworkFailure(message_text, resp.status_code)
        if resp.status_code not in (200, 201):
            raise NetworkFailure(_error_message_from_response(resp), resp.status_code)
        try:
            new_sha = resp.json()["content"]["sha"]
        except (ValueError, KeyError, TypeError) as exc:
            raise NetworkFailure(f"Unexpected PUT response: {exc}", resp.status_code) from exc
        return new_sha
