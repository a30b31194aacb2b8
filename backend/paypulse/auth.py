from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse
from fastapi.security import HTTPBearer
from sqlalchemy.orm import Session
import requests
from loguru import logger
from paypulse.config import settings
from paypulse.database import get_db
from paypulse.dependencies import get_google_oauth
from paypulse.services.google_service import GoogleOAuthClient, token_expiry
from paypulse.store import UserStore
from paypulse import models, security

router = APIRouter()

@router.get("/google")
def google_oauth_login(oauth: GoogleOAuthClient = Depends(get_google_oauth)):
    """Redirect to Google's OAuth consent page."""
    logger.info("Redirecting to Google OAuth consent page")
    return RedirectResponse(oauth.authorization_url())

@router.get("/google/callback")
def google_oauth_callback(code: str = None, error: str = None, db: Session = Depends(get_db),
                          oauth: GoogleOAuthClient = Depends(get_google_oauth)):
    """Exchange the code, store the Google connection and issue a session JWT."""
    if error or not code:
        logger.error(f"OAuth error: {error}")
        raise HTTPException(status_code=400, detail="Google OAuth failed or was canceled.")

    try:
        tokens = oauth.exchange_code(code)
    except requests.RequestException:
        raise HTTPException(status_code=500, detail="Token exchange failed.")

    access_token = tokens.get("access_token")
    refresh_token = tokens.get("refresh_token")
    if not access_token:
        logger.error("No access token in response")
        raise HTTPException(status_code=500, detail="Token exchange incomplete: missing access token.")
    if not refresh_token:
        logger.warning("No refresh token in response - user may have previously authorized this app")

    try:
        profile = oauth.userinfo(access_token)
    except requests.RequestException:
        raise HTTPException(status_code=500, detail="Failed to get user info.")

    email = profile.get("email")
    if not email:
        raise HTTPException(status_code=500, detail="Google profile has no email address.")
    logger.info(f"Successfully authenticated user: {email}")

    user = db.query(models.User).filter_by(email=email).first()
    if not user:
        logger.info(f"Creating new user: {email}")
        user = models.User(email=email, name=profile.get("name", "Google User"))
        db.add(user)
        db.flush()

    prefs = UserStore(db, user.id).get_or_create_preferences()
    prefs.google_access_token = access_token
    # Keep the stored refresh token when Google does not send a new one
    if refresh_token:
        prefs.google_refresh_token = refresh_token
    prefs.google_token_expiry = token_expiry(tokens)
    prefs.gmail_sync_enabled = True
    if not prefs.email:
        prefs.email = email
    db.commit()

    jwt_token = security.create_jwt_token(user_id=user.id)
    return RedirectResponse(f"{settings.FRONTEND_URL}/auth/callback?token={jwt_token}")

auth_scheme = HTTPBearer(auto_error=False)

def get_current_user(token=Depends(auth_scheme), db: Session = Depends(get_db)) -> models.User:
    if not token or not token.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = security.verify_jwt_token(token.credentials)
    try:
        user_id = int(payload["sub"])
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db.get(models.User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user

def get_user_store(current_user: models.User = Depends(get_current_user),
                   db: Session = Depends(get_db)) -> UserStore:
    """Owner-scoped store for the signed-in user."""
    return UserStore(db, current_user.id)
