"""
Dropbox Backup Client
OAuth2 + PKCE authentication, backup upload/download and remote-wins sync
"""
import base64
import hashlib
import json
import logging
import secrets
import time
import webbrowser
from datetime import datetime
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, List, NamedTuple, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import requests
from pydantic import BaseModel

from .logging_config import log_with_context
from .models import StoredTokens
from .storage import TokenStore

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://www.dropbox.com/oauth2/authorize"
TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
UPLOAD_URL = "https://content.dropboxapi.com/2/files/upload"
DOWNLOAD_URL = "https://content.dropboxapi.com/2/files/download"
LIST_FOLDER_URL = "https://api.dropboxapi.com/2/files/list_folder"
LIST_FOLDER_CONTINUE_URL = "https://api.dropboxapi.com/2/files/list_folder/continue"
CREATE_FOLDER_URL = "https://api.dropboxapi.com/2/files/create_folder_v2"
ACCOUNT_URL = "https://api.dropboxapi.com/2/users/get_current_account"
REVOKE_URL = "https://api.dropboxapi.com/2/auth/token/revoke"

DEFAULT_BACKUP_FOLDER = "/EcoFlow_Backups"
SYNC_FILENAME = "ecoflow_synced_backup.json"
BACKUP_EXTENSION = ".json"

VERIFIER_CHARSET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"

# (authorize_url, redirect_uri, timeout_seconds) -> redirect URL, or None when cancelled
AuthorizationPrompt = Callable[[str, str, float], Optional[str]]


class SyncState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    TOKEN_EXPIRED = "token_expired"
    REFRESHING = "refreshing"


class DownloadStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class DownloadResult(NamedTuple):
    status: DownloadStatus
    content: Optional[str] = None


class SyncResult(BaseModel):
    success: bool
    merged: bool
    message: str
    data: Optional[Any] = None
    discarded_local: bool = False


def generate_code_verifier(length: int = 64) -> str:
    """Random PKCE verifier drawn from the unreserved URL characters"""
    if not 43 <= length <= 128:
        raise ValueError("PKCE code verifier length must be between 43 and 128")
    return "".join(secrets.choice(VERIFIER_CHARSET) for _ in range(length))


def code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding"""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def build_authorize_url(client_id: str, redirect_uri: str, challenge: str) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "token_access_type": "offline",
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


class LocalRedirectPrompt:
    """
    Interactive authorization through the system browser

    Opens the authorization page and waits on a local HTTP listener for the
    redirect. Returns None on timeout or Ctrl-C.
    """

    def __init__(self, open_browser: bool = True):
        self.open_browser = open_browser

    def __call__(self, auth_url: str, redirect_uri: str, timeout: float) -> Optional[str]:
        target = urlparse(redirect_uri)
        expected_path = target.path or "/"
        captured: Dict[str, str] = {}

        class _RedirectHandler(BaseHTTPRequestHandler):
            def do_GET(self):
                if urlparse(self.path).path != expected_path:
                    self.send_error(404)
                    return
                captured["url"] = f"{target.scheme}://{target.netloc}{self.path}"
                body = b"Authorization finished. You can close this window."
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format, *args):
                logger.debug("redirect listener: " + format % args)

        server = HTTPServer((target.hostname or "localhost", target.port or 80), _RedirectHandler)
        server.timeout = 1
        deadline = time.monotonic() + timeout
        try:
            logger.info(f"Open this URL to authorize Dropbox access: {auth_url}")
            if self.open_browser:
                webbrowser.open(auth_url)
            while "url" not in captured and time.monotonic() < deadline:
                server.handle_request()
        except KeyboardInterrupt:
            logger.warning("Dropbox authorization cancelled by user")
            return None
        finally:
            server.server_close()

        if "url" not in captured:
            logger.warning(f"Dropbox authorization timed out after {timeout:.0f}s")
        return captured.get("url")


class DropboxClient:
    """
    Client for backing up the app state to a Dropbox folder.

    This class provides methods to:
    - Authenticate with OAuth2 authorization code + PKCE
    - Refresh the access token once when a request returns 401
    - Upload, download and list JSON backups
    - Reconcile local data with the remote sync file

    No method raises for network, HTTP or token problems; failures come back
    as False, None or an unsuccessful SyncResult and are logged.
    """

    def __init__(
        self,
        client_id: Optional[str],
        redirect_uri: str,
        token_store: TokenStore,
        prompt: Optional[AuthorizationPrompt] = None,
        session: Optional[requests.Session] = None,
        backup_folder: str = DEFAULT_BACKUP_FOLDER,
        sync_filename: str = SYNC_FILENAME,
        timeout: float = 30,
        auth_timeout: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            client_id: Dropbox app key
            redirect_uri: Redirect URI registered for the app
            token_store: Persisted token storage
            prompt: Interactive authorization step (default: browser + local listener)
            session: HTTP session (injectable for tests)
            backup_folder: Remote folder holding the backups
            sync_filename: File used by sync_with_dropbox
            timeout: Per-request timeout in seconds
            auth_timeout: Maximum wait for the interactive authorization
            clock: Returns the current time in epoch seconds
        """
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.token_store = token_store
        self.prompt = prompt or LocalRedirectPrompt()
        self.session = session or requests.Session()
        self.backup_folder = "/" + backup_folder.strip("/")
        self.sync_filename = sync_filename
        self.timeout = timeout
        self.auth_timeout = auth_timeout
        self.clock = clock

        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.state = SyncState.UNAUTHENTICATED

    @classmethod
    def from_config(cls, config: dict, token_store: TokenStore, **kwargs) -> "DropboxClient":
        dropbox = config.get("dropbox", {})
        return cls(
            client_id=dropbox.get("client_id"),
            redirect_uri=dropbox.get("redirect_uri", "http://localhost:53682/auth"),
            token_store=token_store,
            backup_folder=dropbox.get("backup_folder", DEFAULT_BACKUP_FOLDER),
            sync_filename=dropbox.get("sync_filename", SYNC_FILENAME),
            timeout=dropbox.get("timeout", 30),
            auth_timeout=dropbox.get("auth_timeout", 300),
            **kwargs,
        )

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _path(self, filename: str) -> str:
        return f"{self.backup_folder}/{filename}"

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _use_tokens(self, tokens: StoredTokens) -> None:
        self.access_token = tokens.access_token
        self.refresh_token = tokens.refresh_token
        self.state = SyncState.AUTHENTICATED

    def _store_token_response(self, payload: Dict[str, Any]) -> None:
        expires_in = payload.get("expires_in")
        tokens = StoredTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or self.refresh_token,
            expires_at=self._now_ms() + int(expires_in) * 1000 if expires_in else None,
        )
        self.token_store.save(tokens)
        self._use_tokens(tokens)

    def _reset(self, reason: str) -> bool:
        logger.warning(f"Dropbox authentication failed: {reason}")
        self.state = SyncState.UNAUTHENTICATED
        return False

    def is_authenticated(self) -> bool:
        """Load still-valid stored tokens without any interaction"""
        tokens = self.token_store.load()
        if tokens is not None and tokens.is_valid(self._now_ms()):
            self._use_tokens(tokens)
            return True
        return False

    def authenticate(self) -> bool:
        """
        Authenticate with stored tokens or the interactive PKCE flow

        Returns:
            True when the client holds a usable access token afterwards
        """
        if self.is_authenticated():
            logger.debug("Using stored Dropbox tokens")
            return True

        if not self.client_id:
            return self._reset("no Dropbox client id configured")

        self.state = SyncState.AUTHENTICATING
        verifier = generate_code_verifier()
        auth_url = build_authorize_url(self.client_id, self.redirect_uri, code_challenge(verifier))

        try:
            redirect = self.prompt(auth_url, self.redirect_uri, self.auth_timeout)
        except Exception as e:
            logger.error(f"Authorization prompt failed: {e}")
            return self._reset("authorization prompt failed")

        if not redirect:
            return self._reset("authorization cancelled or timed out")

        query = parse_qs(urlparse(redirect).query)
        code = (query.get("code") or [None])[0]
        if not code:
            error = (query.get("error") or ["missing code"])[0]
            return self._reset(f"redirect without authorization code ({error})")

        try:
            response = self.session.post(
                TOKEN_URL,
                data={
                    "code": code,
                    "grant_type": "authorization_code",
                    "client_id": self.client_id,
                    "redirect_uri": self.redirect_uri,
                    "code_verifier": verifier,
                },
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Error exchanging authorization code: {e}")
            return self._reset("token exchange request failed")

        if not response.ok:
            logger.error(f"Token exchange failed with status {response.status_code}: {response.text}")
            return self._reset("token exchange rejected")

        try:
            payload = response.json()
            self._store_token_response(payload)
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Unexpected token response: {e}")
            return self._reset("token response without access token")

        logger.info("Successfully authenticated with Dropbox")
        return True

    def refresh_access_token(self) -> bool:
        """
        Exchange the refresh token for a new access token

        On failure the old tokens stay in place; the caller decides whether
        to authenticate again.
        """
        if not self.refresh_token:
            logger.info("No Dropbox refresh token available")
            return False

        self.state = SyncState.REFRESHING
        try:
            response = self.session.post(
                TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self.refresh_token,
                    "client_id": self.client_id,
                },
                timeout=self.timeout,
            )
            if not response.ok:
                logger.error(f"Token refresh failed with status {response.status_code}: {response.text}")
                self.state = SyncState.UNAUTHENTICATED
                return False
            self._store_token_response(response.json())
        except requests.exceptions.RequestException as e:
            logger.error(f"Token refresh error: {e}")
            self.state = SyncState.UNAUTHENTICATED
            return False
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Unexpected token refresh response: {e}")
            self.state = SyncState.UNAUTHENTICATED
            return False

        logger.info("Dropbox access token refreshed")
        return True

    def _ensure_authenticated(self) -> bool:
        if self.state == SyncState.AUTHENTICATED and self.access_token:
            return True
        return self.authenticate()

    def _authorized_post(self, url: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> Optional[requests.Response]:
        """
        POST with the bearer token; a 401 triggers one refresh and one retry

        Returns:
            The last response, or None when the request itself failed
        """
        response = None
        for attempt in range(2):
            request_headers = dict(headers or {})
            request_headers["Authorization"] = f"Bearer {self.access_token}"
            try:
                response = self.session.post(url, headers=request_headers, timeout=self.timeout, **kwargs)
            except requests.exceptions.RequestException as e:
                logger.error(f"Dropbox request to {url} failed: {e}")
                return None

            if response.status_code != 401:
                return response
            if attempt == 1:
                logger.error(f"Dropbox request to {url} still unauthorized after token refresh")
                self.state = SyncState.TOKEN_EXPIRED
                return response

            logger.info("Access token rejected, attempting to refresh it")
            self.state = SyncState.TOKEN_EXPIRED
            if not self.refresh_access_token():
                return response
        return response

    def test_api_token(self) -> bool:
        """Cheap authenticated call to check the current access token"""
        if not self.access_token:
            return False
        try:
            response = self.session.post(
                ACCOUNT_URL,
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Token test request failed: {e}")
            return False
        if not response.ok:
            logger.warning(f"Token test failed with status {response.status_code}")
        return response.ok

    def logout(self) -> None:
        """Revoke the token remotely and always forget it locally"""
        try:
            if self.access_token:
                self.session.post(
                    REVOKE_URL,
                    headers={"Authorization": f"Bearer {self.access_token}"},
                    timeout=self.timeout,
                )
        except requests.exceptions.RequestException as e:
            logger.error(f"Logout error: {e}")
        finally:
            self.access_token = None
            self.refresh_token = None
            self.state = SyncState.UNAUTHENTICATED
            self.token_store.clear()

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def upload_backup(self, data: Any, filename: str) -> bool:
        """
        Upload (and overwrite) a backup file in the backup folder

        Args:
            data: Serialized backup string/bytes, or JSON-serializable data
            filename: Name inside the backup folder
        """
        if not self._ensure_authenticated():
            logger.error("Upload skipped: not authenticated with Dropbox")
            return False

        if isinstance(data, bytes):
            body = data
        elif isinstance(data, str):
            body = data.encode("utf-8")
        else:
            body = json.dumps(data, indent=2, default=str).encode("utf-8")

        api_arg = {"path": self._path(filename), "mode": "overwrite", "autorename": False, "mute": True}
        response = self._authorized_post(
            UPLOAD_URL,
            headers={
                "Content-Type": "application/octet-stream",
                "Dropbox-API-Arg": json.dumps(api_arg),
            },
            data=body,
        )
        if response is None:
            return False
        if response.ok:
            log_with_context(logger, logging.INFO, "Backup uploaded", backup_file=filename, size=len(body))
            return True

        logger.error(f"Upload of {filename} failed with status {response.status_code}: {response.text}")
        return False

    @staticmethod
    def _is_not_found(response: requests.Response) -> bool:
        try:
            error = response.json()
        except ValueError:
            return False
        if not isinstance(error, dict):
            return False
        summary = str(error.get("error_summary", ""))
        if summary.startswith("path/not_found") or summary.startswith("path_lookup/not_found"):
            return True
        detail = error.get("error") or {}
        if not isinstance(detail, dict):
            return False
        for key in ("path", "path_lookup"):
            if isinstance(detail.get(key), dict) and detail[key].get(".tag") == "not_found":
                return True
        return False

    def fetch_backup(self, filename: str) -> DownloadResult:
        """Download a backup and tell 'does not exist' apart from failures"""
        if not self._ensure_authenticated():
            logger.error("Download skipped: not authenticated with Dropbox")
            return DownloadResult(DownloadStatus.FAILED)

        response = self._authorized_post(
            DOWNLOAD_URL,
            headers={"Dropbox-API-Arg": json.dumps({"path": self._path(filename)})},
        )
        if response is None:
            return DownloadResult(DownloadStatus.FAILED)

        if response.ok:
            try:
                content = response.content.decode("utf-8")
            except UnicodeDecodeError as e:
                logger.error(f"Backup {filename} is not UTF-8 text: {e}")
                return DownloadResult(DownloadStatus.FAILED)
            log_with_context(logger, logging.INFO, "Backup downloaded", backup_file=filename, size=len(content))
            return DownloadResult(DownloadStatus.FOUND, content)

        if self._is_not_found(response):
            logger.info(f"No remote backup named {filename} yet")
            return DownloadResult(DownloadStatus.NOT_FOUND)

        logger.error(f"Download of {filename} failed with status {response.status_code}: {response.text}")
        return DownloadResult(DownloadStatus.FAILED)

    def download_backup(self, filename: str) -> Optional[str]:
        """Backup content, or None when it does not exist or could not be fetched"""
        return self.fetch_backup(filename).content

    def create_backup_folder(self) -> bool:
        if not self._ensure_authenticated():
            return False
        response = self._authorized_post(CREATE_FOLDER_URL, json={"path": self.backup_folder, "autorename": False})
        return response is not None and response.ok

    def list_backups(self) -> List[Dict[str, Any]]:
        """
        JSON backups in the backup folder, newest first

        Returns:
            List of dicts with 'name', 'modified' (ISO string) and 'size'.
            A missing folder is created and reported as an empty list.
        """
        if not self._ensure_authenticated():
            return []

        response = self._authorized_post(LIST_FOLDER_URL, json={"path": self.backup_folder, "recursive": False})
        if response is None:
            return []
        if not response.ok:
            if self._is_not_found(response):
                logger.info(f"Backup folder {self.backup_folder} does not exist yet, creating it")
                self.create_backup_folder()
            else:
                logger.error(f"Listing backups failed with status {response.status_code}: {response.text}")
            return []

        entries = []
        try:
            page = response.json()
            entries.extend(page.get("entries", []))
            while page.get("has_more"):
                response = self._authorized_post(LIST_FOLDER_CONTINUE_URL, json={"cursor": page["cursor"]})
                if response is None or not response.ok:
                    logger.warning("Listing backups stopped early, returning the entries received so far")
                    break
                page = response.json()
                entries.extend(page.get("entries", []))
        except (ValueError, KeyError) as e:
            logger.error(f"Unexpected list_folder response: {e}")
            return []

        backups = [
            {"name": entry.get("name"), "modified": entry.get("server_modified"), "size": entry.get("size", 0)}
            for entry in entries
            if entry.get(".tag") == "file" and str(entry.get("name") or "").endswith(BACKUP_EXTENSION)
        ]
        return sorted(backups, key=lambda b: b["modified"] or "", reverse=True)

    def get_latest_backup_metadata(self) -> Optional[Dict[str, Any]]:
        backups = self.list_backups()
        if not backups:
            return None
        latest = backups[0]
        modified = latest["modified"]
        return {
            "name": latest["name"],
            "timestamp": datetime.fromisoformat(modified.replace("Z", "+00:00")) if modified else None,
            "size": latest["size"],
        }

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def force_upload(self, local_data: Any) -> bool:
        """Overwrite the remote sync file with local data"""
        logger.info("Forcing upload of local data, overwriting the remote sync file")
        return self.upload_backup(json.dumps(local_data, indent=2, default=str), self.sync_filename)

    @staticmethod
    def _content_of(snapshot: Any) -> Any:
        # The snapshot creation time differs on every export
        if isinstance(snapshot, dict):
            return {k: v for k, v in snapshot.items() if k != "timestamp"}
        return snapshot

    def sync_with_dropbox(self, local_data: Any) -> SyncResult:
        """
        Reconcile local data with the remote sync file

        - No remote file: local data is uploaded (merged=False)
        - Remote file exists: it is returned for the caller to apply and
          replaces the local state entirely (merged=True)
        """
        if not self._ensure_authenticated():
            return SyncResult(success=False, merged=False, message="Authentication failed")

        if not self.test_api_token():
            logger.info("Token test failed, attempting to refresh before syncing")
            if not self.refresh_access_token() or not self.test_api_token():
                return SyncResult(
                    success=False, merged=False,
                    message="Dropbox token is invalid and could not be refreshed.",
                )

        remote = self.fetch_backup(self.sync_filename)

        if remote.status == DownloadStatus.FAILED:
            return SyncResult(success=False, merged=False, message="Could not download the remote backup.")

        if remote.status == DownloadStatus.NOT_FOUND:
            logger.info("No remote backup found, uploading local data")
            if self.upload_backup(json.dumps(local_data, indent=2, default=str), self.sync_filename):
                return SyncResult(success=True, merged=False, message="Initial backup uploaded to Dropbox.")
            return SyncResult(success=False, merged=False, message="Failed to upload initial backup.")

        try:
            remote_data = json.loads(remote.content)
        except ValueError as e:
            logger.error(f"Remote backup is not valid JSON: {e}")
            return SyncResult(success=False, merged=False, message="Remote backup is not valid JSON.")

        local_normalized = json.loads(json.dumps(local_data, default=str))
        discarded = self._content_of(local_normalized) != self._content_of(remote_data)
        if discarded:
            logger.warning("Remote backup differs from local data; local changes are replaced by the remote state")

        return SyncResult(
            success=True,
            merged=True,
            data=remote_data,
            message="Remote data has been downloaded.",
            discarded_local=discarded,
        )
