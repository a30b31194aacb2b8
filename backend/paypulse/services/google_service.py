from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode
import requests
from loguru import logger
from paypulse.models import utcnow

GOOGLE_AUTH_BASE = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]


class GoogleAuthError(Exception):
    """Raised when Google credentials are missing or cannot be refreshed."""


class GoogleOAuthClient:
    """Thin wrapper over Google's OAuth2 endpoints, configured at construction."""

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str,
                 session: Optional[requests.Session] = None, timeout: float = 30):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.session = session or requests.Session()
        self.timeout = timeout

    def authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "access_type": "offline",
            # Force consent so Google always returns a refresh token
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return GOOGLE_AUTH_BASE + "?" + urlencode(params)

    def exchange_code(self, code: str) -> dict:
        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        logger.debug("Exchanging authorization code for tokens")
        resp = self.session.post(GOOGLE_TOKEN_URL, data=data, timeout=self.timeout)
        if not resp.ok:
            logger.error(f"Token exchange failed: {resp.status_code} - {resp.text}")
        resp.raise_for_status()
        return resp.json()

    def refresh(self, refresh_token: str) -> dict:
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        resp = self.session.post(GOOGLE_TOKEN_URL, data=data, timeout=self.timeout)
        if not resp.ok:
            logger.error(f"Token refresh failed with status {resp.status_code}: {resp.text}")
        resp.raise_for_status()

        token_info = resp.json()
        if not token_info.get("access_token"):
            raise GoogleAuthError("Failed to refresh access token: No access_token in response")
        if "expires_in" in token_info:
            logger.info(f"Token expires in {token_info['expires_in']} seconds")
        return token_info

    def userinfo(self, access_token: str) -> dict:
        resp = self.session.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"},
                                timeout=self.timeout)
        if not resp.ok:
            logger.error(f"Failed to get user info: {resp.status_code} - {resp.text}")
        resp.raise_for_status()
        return resp.json()


def token_expiry(token_info: dict, now: Optional[datetime] = None) -> Optional[datetime]:
    expires_in = token_info.get("expires_in")
    if expires_in is None:
        return None
    return (now or utcnow()) + timedelta(seconds=int(expires_in))


def ensure_valid_token(prefs, oauth: GoogleOAuthClient, now: Optional[datetime] = None) -> str:
    """
    Return a usable access token for the stored Google connection.

    Refreshes when the stored expiry is missing or in the past and writes the
    new access token, refresh token (if rotated) and expiry back onto ``prefs``.
    The caller commits.
    """
    now = now or utcnow()
    if prefs.google_token_expiry and now < prefs.google_token_expiry:
        return prefs.google_access_token

    if not prefs.google_refresh_token:
        raise GoogleAuthError("No refresh token available")

    logger.info(f"Refreshing Google access token for user {prefs.user_id}")
    token_info = oauth.refresh(prefs.google_refresh_token)
    prefs.google_access_token = token_info["access_token"]
    if token_info.get("refresh_token"):
        prefs.google_refresh_token = token_info["refresh_token"]
    prefs.google_token_expiry = token_expiry(token_info, now)
    return prefs.google_access_token
