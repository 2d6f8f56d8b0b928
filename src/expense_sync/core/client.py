import threading
from typing import Any
from urllib.parse import quote

import requests

from ..config import Config
from ..errors import RemoteStoreError, RemoteTimeoutError


class RemoteStoreClient:
    """HTTP client for the shared document store.

    Implements the ``RemoteStore`` protocol (plus ``batch_write``) against a
    JSON API laid out per user:

        GET  /users/{user}/{kind}                -> {"documents": [...]}
        POST /users/{user}/{kind}:batch          {"upserts": [...], "deletes": [...]}
        GET  /users/{user}/{kind}/{user}         -> document (404 = absent)
        PUT  /users/{user}/{kind}/{user}         document

    Every method raises ``RemoteStoreError`` on transport or HTTP failure and
    ``RemoteTimeoutError`` when the server does not answer in time.
    """

    def __init__(self, config: Config):
        self.config = config
        self._thread_local = threading.local()
        self._sessions: list[requests.Session] = []
        self._lock = threading.Lock()
        self.base_url = config.remote_url.rstrip("/")

    @property
    def session(self) -> requests.Session:
        """The current thread's session."""
        return self._get_session()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            session = self._create_session()
            with self._lock:
                self._sessions.append(session)
            self._thread_local.session = session
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        if self.config.token:
            session.headers["Authorization"] = (
                f"Bearer {self.config.token}"
            )
        session.headers["Accept"] = "application/json"
        session.verify = not self.config.insecure
        return session

    def close(self) -> None:
        """Close every session opened by any worker thread."""
        with self._lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        self._thread_local = threading.local()

    def _url(self, user_id: str, kind: str, *suffix: str) -> str:
        parts = ["users", quote(user_id, safe=""), quote(kind, safe="")]
        url = f"{self.base_url}/{'/'.join(parts)}"
        for part in suffix:
            if part.startswith(":"):
                url += part
            else:
                url += "/" + quote(part, safe="")
        return url

    def _request(
        self,
        method: str,
        url: str,
        *,
        allow_404: bool = False,
        **kwargs: Any,
    ) -> requests.Response | None:
        """
        Send a request and translate failures into sync errors.

        Returns ``None`` for a 404 when *allow_404* is set.
        """
        session = self._get_session()
        timeout = self.config.timeout
        try:
            response = session.request(
                method,
                url,
                timeout=(min(10.0, timeout), timeout),
                **kwargs,
            )
        except requests.Timeout as exc:
            raise RemoteTimeoutError(
                f"{method} {url} timed out after {timeout}s"
            ) from exc
        except requests.RequestException as exc:
            raise RemoteStoreError(f"{method} {url} failed: {exc}") from exc

        if allow_404 and response.status_code == 404:
            return None
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise RemoteStoreError(
                f"{method} {url} returned HTTP {response.status_code}"
            ) from exc
        return response

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteStoreError(
                f"Invalid JSON from {response.url}"
            ) from exc

    def query(self, kind: str, user_id: str) -> list[dict[str, Any]]:
        """
        List a user's documents of one kind.

        Returns:
            Documents ordered by updatedAt, newest first.

        Raises:
            RemoteStoreError: On transport, HTTP or payload errors.
        """
        response = self._request("GET", self._url(user_id, kind))
        payload = self._json(response)
        documents = (
            payload.get("documents") if isinstance(payload, dict) else None
        )
        if not isinstance(documents, list):
            raise RemoteStoreError(
                f"Malformed {kind} listing: missing 'documents' array"
            )
        return documents

    def batch_write(
        self,
        kind: str,
        user_id: str,
        documents: list[dict[str, Any]],
        ids: list[str],
    ) -> None:
        """
        Apply upserts and deletes as one server-side atomic batch.
        """
        self._request(
            "POST",
            self._url(user_id, kind, ":batch"),
            json={"upserts": documents, "deletes": ids},
        )

    def batch_upsert(
        self, kind: str, user_id: str, documents: list[dict[str, Any]]
    ) -> None:
        self.batch_write(kind, user_id, documents, [])

    def batch_delete(self, kind: str, user_id: str, ids: list[str]) -> None:
        self.batch_write(kind, user_id, [], ids)

    def get_singleton(
        self, kind: str, user_id: str
    ) -> dict[str, Any] | None:
        """
        Fetch the user's singleton document (e.g. settings).

        Returns:
            The document, or None if the server answers 404.
        """
        response = self._request(
            "GET", self._url(user_id, kind, user_id), allow_404=True
        )
        if response is None:
            return None
        document = self._json(response)
        if not isinstance(document, dict):
            raise RemoteStoreError(f"Malformed {kind} document")
        return document

    def set_singleton(
        self, kind: str, user_id: str, document: dict[str, Any]
    ) -> None:
        self._request(
            "PUT", self._url(user_id, kind, user_id), json=document
        )
