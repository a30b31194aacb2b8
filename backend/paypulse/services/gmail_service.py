import base64
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, List, Optional
import requests
from loguru import logger
from paypulse.services.html_service import html_to_text

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"

BILL_SEARCH_TERMS = [
    "bill",
    "invoice",
    "payment due",
    "statement",
    "amount due",
    "pay by",
    "due date",
    "monthly payment",
    "subscription",
    "utility bill",
    "auto-pay",
]
PAGE_SIZE = 50
MAX_BODY_CHARS = 8000
# Plain text parts shorter than this are usually "view this email in a browser" stubs
MIN_PLAIN_TEXT_CHARS = 100


@dataclass
class GmailMessage:
    id: str
    thread_id: str
    subject: str
    sender: str
    date: str
    snippet: str
    body: str


def build_bill_query(after: datetime) -> str:
    """Gmail search query for bill-like messages received after ``after`` (naive UTC)."""
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    terms = " OR ".join(f'"{term}"' for term in BILL_SEARCH_TERMS)
    return f"({terms}) after:{int(after.timestamp())}"


def decode_body_data(data: str) -> str:
    # Gmail uses URL-safe base64 without padding
    return base64.urlsafe_b64decode(data + "==").decode("utf-8", errors="ignore")


def extract_text_from_parts(parts: List[dict]) -> tuple:
    """Depth-first search for the first text/plain and first text/html parts."""
    plain = ""
    html = ""
    for part in parts:
        if part.get("parts"):
            nested_plain, nested_html = extract_text_from_parts(part["parts"])
            plain = plain or nested_plain
            html = html or nested_html

        data = part.get("body", {}).get("data")
        if data:
            mime = part.get("mimeType")
            if mime == "text/plain" and not plain:
                plain = decode_body_data(data)
            elif mime == "text/html" and not html:
                html = decode_body_data(data)
    return plain, html


def extract_message_body(payload: dict, snippet: str = "") -> str:
    """
    Decode a Gmail ``format=full`` payload into plain text.

    A top-level body wins; otherwise the first text/plain part is used when it
    has real content, falling back to the first text/html part. The snippet is
    appended because Gmail's preview often carries the amount, and the result
    is cut to ``MAX_BODY_CHARS``.
    """
    body = ""
    top_data = payload.get("body", {}).get("data")
    if top_data:
        content = decode_body_data(top_data)
        body = html_to_text(content) if payload.get("mimeType") == "text/html" else content
    elif payload.get("parts"):
        plain, html = extract_text_from_parts(payload["parts"])
        if plain and len(plain) > MIN_PLAIN_TEXT_CHARS:
            body = plain
        elif html:
            body = html_to_text(html)
        elif plain:
            body = plain

    full_body = f"{body}\n\n--- Email Preview ---\n{snippet}" if body else snippet
    return full_body[:MAX_BODY_CHARS]


def get_header(headers: List[dict], name: str) -> str:
    for header in headers:
        if (header.get("name") or "").lower() == name.lower():
            return header.get("value") or ""
    return ""


def parse_message(message: dict) -> GmailMessage:
    payload = message.get("payload", {})
    headers = payload.get("headers", [])
    snippet = message.get("snippet", "")
    return GmailMessage(
        id=message.get("id", ""),
        thread_id=message.get("threadId", ""),
        subject=get_header(headers, "Subject"),
        sender=get_header(headers, "From"),
        date=get_header(headers, "Date"),
        snippet=snippet,
        body=extract_message_body(payload, snippet),
    )


class GmailClient:
    """Read-only Gmail REST client bound to one access token."""

    def __init__(self, access_token: str, session: Optional[requests.Session] = None, timeout: float = 30):
        self.access_token = access_token
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    def list_message_ids(self, query: str = None, max_results: int = PAGE_SIZE) -> List[str]:
        url = f"{GMAIL_API_BASE}/users/me/messages"
        params = {}
        if query:
            params["q"] = query
        if max_results:
            params["maxResults"] = max_results

        logger.debug(f"Making Gmail API request to: {url} with query: {query}")
        resp = self.session.get(url, params=params, headers=self.headers, timeout=self.timeout)
        if not resp.ok:
            logger.error(f"Gmail API error: {resp.status_code} - {resp.reason}")
            logger.error(f"Response content: {resp.text}")
        resp.raise_for_status()

        messages = resp.json().get("messages", [])
        if not messages:
            logger.info("No messages found matching the query criteria")
        else:
            logger.info(f"Found {len(messages)} messages matching query")
        return [msg["id"] for msg in messages]

    def get_message(self, message_id: str) -> dict:
        url = f"{GMAIL_API_BASE}/users/me/messages/{message_id}"
        logger.debug(f"Fetching message with ID: {message_id}")
        resp = self.session.get(url, params={"format": "full"}, headers=self.headers, timeout=self.timeout)
        if not resp.ok:
            logger.error(f"Failed to fetch message {message_id}: {resp.status_code} - {resp.text}")
        resp.raise_for_status()
        return resp.json()

    def search_bill_emails(self, after: datetime) -> Iterator[GmailMessage]:
        """
        Yield decoded bill candidates received after ``after``.

        Listing failures (auth, transport) propagate to the caller. A message
        that fails to download is logged and skipped.
        """
        query = build_bill_query(after)
        for message_id in self.list_message_ids(query=query, max_results=PAGE_SIZE):
            try:
                message = self.get_message(message_id)
            except requests.RequestException as e:
                logger.error(f"Skipping message {message_id}: {e}")
                continue
            yield parse_message(message)
