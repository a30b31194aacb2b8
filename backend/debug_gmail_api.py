"""
Debug script for Gmail API permissions.
Run this script to verify that stored Google credentials can still search
for bill emails.
"""

import os
import sys
from datetime import timedelta
import requests
from loguru import logger

# Add backend directory to sys.path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from paypulse.database import SessionLocal
from paypulse.dependencies import get_google_oauth
from paypulse.models import utcnow
from paypulse.services.gmail_service import GmailClient, build_bill_query
from paypulse.services.google_service import ensure_valid_token
from paypulse.store import ServiceStore

def check_gmail_api_permissions():
    """
    Test Gmail API access with stored credentials
    """
    logger.info("Starting Gmail API diagnostic tool")
    db = SessionLocal()
    store = ServiceStore(db)
    oauth = get_google_oauth()

    try:
        preferences = store.connected_preferences()
        if not preferences:
            logger.error("No users have a Google account connected")
            return

        for prefs in preferences:
            logger.info(f"Testing Gmail API for user ID {prefs.user_id} ({prefs.email})")
            try:
                access_token = ensure_valid_token(prefs, oauth)
                store.commit()
                logger.success("Access token is valid")

                gmail = GmailClient(access_token)
                resp = gmail.session.get("https://gmail.googleapis.com/gmail/v1/users/me/profile",
                                         headers=gmail.headers, timeout=gmail.timeout)
                if resp.ok:
                    profile = resp.json()
                    logger.success(f"Gmail API access successful - Email: {profile.get('emailAddress')}")
                    logger.info(f"Gmail account has {profile.get('messagesTotal', '?')} total messages")
                else:
                    logger.error(f"Gmail API access failed: {resp.status_code} - {resp.text}")

                logger.info("Testing bill search query for the last 30 days...")
                message_ids = gmail.list_message_ids(build_bill_query(utcnow() - timedelta(days=30)), max_results=5)
                logger.success(f"Query successful! Found {len(message_ids)} messages")
            except requests.RequestException as e:
                logger.error(f"Gmail API request failed for user ID {prefs.user_id}: {e}")
            except Exception as e:
                store.rollback()
                logger.exception(f"Error testing Gmail API for user ID {prefs.user_id}: {str(e)}")
    finally:
        db.close()

    logger.info("Gmail API diagnostic completed")

if __name__ == "__main__":
    check_gmail_api_permissions()
