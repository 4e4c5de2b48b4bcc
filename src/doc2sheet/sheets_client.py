"""
Spreadsheet backends used by the sink.

Two operations are consumed: create a spreadsheet with a title (and tabs),
and write a row-major grid of values into a range.
"""
from __future__ import annotations

import copy
import logging
import re
import threading
import uuid
from typing import Dict, List, Optional, Protocol, Sequence

import google.auth
import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import credentials as user_credentials
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import HttpRequest

from doc2sheet.schema import SinkResource
from doc2sheet.settings import Settings

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
TOKEN_URI = "https://oauth2.googleapis.com/token"
SHEET_URL = "https://docs.google.com/spreadsheets/d/{spreadsheet_id}"

_RANGE_RE = re.compile(r"^'((?:[^']|'')+)'!A1$")


class SheetsBackendError(RuntimeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SheetsClient(Protocol):
    def create_spreadsheet(self, title: str, tab_titles: Sequence[str]) -> SinkResource:
        ...

    def write_values(self, spreadsheet_id: str, range_: str, values: List[List[str]]) -> None:
        ...


def a1_range(tab_title: str) -> str:
    """Range anchored at the first cell of ``tab_title``."""
    return "'{}'!A1".format(tab_title.replace("'", "''"))


class InMemorySheetsClient:
    """Offline backend; keeps spreadsheets in a dict and can be told to fail."""

    def __init__(self, *, fail_on_create: bool = False, fail_on_write: bool = False):
        self.fail_on_create = fail_on_create
        self.fail_on_write = fail_on_write
        self._lock = threading.Lock()
        self._spreadsheets: Dict[str, dict] = {}

    def create_spreadsheet(self, title: str, tab_titles: Sequence[str]) -> SinkResource:
        if self.fail_on_create:
            raise SheetsBackendError("create refused (fail_on_create)", status_code=503)

        spreadsheet_id = uuid.uuid4().hex
        with self._lock:
            self._spreadsheets[spreadsheet_id] = {
                "title": title,
                "tabs": {tab: [] for tab in tab_titles},
            }
        return SinkResource(
            spreadsheet_id=spreadsheet_id,
            title=title,
            url=f"memory://spreadsheets/{spreadsheet_id}",
        )

    def write_values(self, spreadsheet_id: str, range_: str, values: List[List[str]]) -> None:
        if self.fail_on_write:
            raise SheetsBackendError("write refused (fail_on_write)", status_code=503)

        m = _RANGE_RE.match(range_)
        if not m:
            raise SheetsBackendError(f"Unsupported range: {range_}", status_code=400)
        tab = m.group(1).replace("''", "'")

        with self._lock:
            sheet = self._spreadsheets.get(spreadsheet_id)
            if sheet is None:
                raise SheetsBackendError(f"No spreadsheet {spreadsheet_id}", status_code=404)
            if tab not in sheet["tabs"]:
                raise SheetsBackendError(f"No tab {tab!r} in {spreadsheet_id}", status_code=400)
            sheet["tabs"][tab] = copy.deepcopy(values)

    # inspection helpers

    def read_values(self, spreadsheet_id: str, tab_title: str) -> List[List[str]]:
        with self._lock:
            return copy.deepcopy(self._spreadsheets[spreadsheet_id]["tabs"][tab_title])

    def tab_titles(self, spreadsheet_id: str) -> List[str]:
        with self._lock:
            return list(self._spreadsheets[spreadsheet_id]["tabs"])

    @property
    def spreadsheet_count(self) -> int:
        with self._lock:
            return len(self._spreadsheets)


_TRANSPORT_ERRORS = (HttpError, GoogleAuthError, httplib2.HttpLib2Error, OSError)


def _backend_error(action: str, e: Exception) -> SheetsBackendError:
    if isinstance(e, HttpError):
        status = int(e.resp.status)
        return SheetsBackendError(
            f"Google Sheets {action} failed with HTTP {status}: {e.reason}", status_code=status
        )
    return SheetsBackendError(f"Google Sheets {action} failed: {type(e).__name__}: {e}")


class GoogleSheetsClient:
    """
    Sheets v4 over google-api-python-client.

    The service object is shared across threads; httplib2 is not, so every
    request gets its own authorized ``Http``.
    """

    def __init__(self, credentials=None, *, timeout_s: float = 30.0, service=None):
        self._credentials = credentials
        self._timeout_s = timeout_s
        if service is None:
            service = build(
                "sheets",
                "v4",
                http=self._new_http(),
                requestBuilder=self._build_request,
                cache_discovery=False,
            )
        self._service = service

    def _new_http(self) -> AuthorizedHttp:
        return AuthorizedHttp(self._credentials, http=httplib2.Http(timeout=self._timeout_s))

    def _build_request(self, http, *args, **kwargs) -> HttpRequest:
        return HttpRequest(self._new_http(), *args, **kwargs)

    def create_spreadsheet(self, title: str, tab_titles: Sequence[str]) -> SinkResource:
        body = {
            "properties": {"title": title},
            "sheets": [{"properties": {"title": tab}} for tab in tab_titles],
        }
        try:
            resp = (
                self._service.spreadsheets()
                .create(body=body, fields="spreadsheetId,spreadsheetUrl")
                .execute()
            )
        except _TRANSPORT_ERRORS as e:
            raise _backend_error("create", e) from e

        spreadsheet_id = resp["spreadsheetId"]
        url = resp.get("spreadsheetUrl") or SHEET_URL.format(spreadsheet_id=spreadsheet_id)
        return SinkResource(spreadsheet_id=spreadsheet_id, title=title, url=url)

    def write_values(self, spreadsheet_id: str, range_: str, values: List[List[str]]) -> None:
        try:
            (
                self._service.spreadsheets()
                .values()
                .update(
                    spreadsheetId=spreadsheet_id,
                    range=range_,
                    valueInputOption="RAW",
                    body={"majorDimension": "ROWS", "values": values},
                )
                .execute()
            )
        except _TRANSPORT_ERRORS as e:
            raise _backend_error("write", e) from e


def load_google_credentials(s: Settings):
    """Build credentials from configuration; they are used as-is, never validated here."""
    if s.google_service_account_file:
        creds = service_account.Credentials.from_service_account_file(
            s.google_service_account_file, scopes=SCOPES
        )
        if s.google_project_id:
            creds = creds.with_quota_project(s.google_project_id)
        return creds

    if s.google_client_id and s.google_client_secret and s.google_refresh_token:
        return user_credentials.Credentials(
            None,
            refresh_token=s.google_refresh_token,
            client_id=s.google_client_id,
            client_secret=s.google_client_secret,
            token_uri=TOKEN_URI,
            scopes=SCOPES,
            quota_project_id=s.google_project_id,
        )

    creds, _ = google.auth.default(scopes=SCOPES, quota_project_id=s.google_project_id)
    return creds


def get_sheets_client(s: Settings) -> SheetsClient:
    if s.sink_provider == "memory":
        return InMemorySheetsClient()
    if s.sink_provider == "google":
        logger.info("Using Google Sheets sink")
        return GoogleSheetsClient(load_google_credentials(s), timeout_s=s.sink_timeout_s)
    raise ValueError(f"Unsupported SINK_PROVIDER: {s.sink_provider}")
