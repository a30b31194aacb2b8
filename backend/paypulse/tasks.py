from dataclasses import asdict
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session
import requests
from loguru import logger
from paypulse.auth import get_current_user, get_user_store
from paypulse.celery_app import celery_app
from paypulse.config import settings
from paypulse.database import SessionLocal, get_db
from paypulse.dependencies import (
    get_calendar_factory, get_gmail_factory, get_google_oauth, get_llm_client, get_llm_model,
    get_reminder_sender,
)
from paypulse.services import bill_service, reminder_service
from paypulse.services.calendar_service import sync_all_bills
from paypulse.services.categories import fallback_categorize
from paypulse.services.cleanup_service import cleanup_duplicate_bills
from paypulse.services.google_service import GoogleAuthError, ensure_valid_token
from paypulse.services.openai_service import BillExtractor
from paypulse.services.subscription_service import can_access_ai, tier_of
from paypulse.services.sync_service import GoogleNotConnected, prepare_resync, run_gmail_sync
from paypulse.store import ServiceStore, UserStore
from paypulse import models, schemas

router = APIRouter()

def _bill_out(store: UserStore, bill: models.Bill) -> schemas.BillOut:
    out = schemas.BillOut.model_validate(bill)
    out.is_paid_this_period = bill_service.is_paid_this_period(store, bill)
    return out

def _get_owned_bill(store: UserStore, bill_id: int) -> models.Bill:
    bill = store.get_bill(bill_id)
    if bill is None:
        raise HTTPException(status_code=404, detail="Bill not found")
    return bill

def _google_access_token(store: UserStore, oauth) -> str:
    prefs = store.preferences()
    if prefs is None or not prefs.google_access_token:
        raise HTTPException(status_code=400, detail="Google account not connected")
    try:
        access_token = ensure_valid_token(prefs, oauth)
    except (GoogleAuthError, requests.RequestException) as e:
        logger.error(f"Google token refresh failed for user {store.user_id}: {e}")
        raise HTTPException(status_code=401, detail="Google authorization expired. Please reconnect your account.")
    store.commit()
    return access_token

# --- Gmail sync ------------------------------------------------------------

@router.post("/sync-gmail")
def sync_gmail(store: UserStore = Depends(get_user_store), oauth=Depends(get_google_oauth),
               gmail_factory=Depends(get_gmail_factory), llm_client=Depends(get_llm_client),
               model: str = Depends(get_llm_model)):
    if llm_client is None:
        raise HTTPException(status_code=503, detail="Bill extraction model is not configured")
    try:
        result = run_gmail_sync(store, oauth, gmail_factory, llm_client, model)
    except GoogleAuthError as e:
        store.rollback()
        logger.error(f"Gmail sync auth error for user {store.user_id}: {e}")
        raise HTTPException(status_code=401, detail="Google authorization expired. Please reconnect your account.")
    except Exception as e:
        store.rollback()
        logger.exception(f"Gmail sync error for user {store.user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to sync Gmail")

    if isinstance(result, GoogleNotConnected):
        raise HTTPException(status_code=400, detail=result.message)
    return {"message": result.message, **asdict(result)}

@router.post("/sync")
def sync_gmail_background(current_user: models.User = Depends(get_current_user)):
    celery_app.send_task("paypulse.tasks.sync_gmail_inbox", args=[current_user.id])
    return {"message": "Gmail sync initiated"}

@router.post("/resync-gmail")
def resync_gmail(body: schemas.ResyncRequest = schemas.ResyncRequest(),
                 store: UserStore = Depends(get_user_store)):
    counts = prepare_resync(store, body.delete_auto_detected_bills)
    logger.info(f"Resync prepared for user {store.user_id}: {counts}")
    return {"message": "Ready to re-sync. Run a Gmail sync to rescan your inbox.", **counts}

@router.post("/cleanup-duplicates")
def cleanup_duplicates(store: UserStore = Depends(get_user_store)):
    removed = cleanup_duplicate_bills(store)
    if not removed:
        return {"message": "No duplicates found", "removed": 0}
    return {"message": f"Removed {removed} duplicate bills", "removed": removed}

@router.get("/rejected-bills", response_model=list[schemas.RejectedBillOut])
def list_rejected_bills(store: UserStore = Depends(get_user_store)):
    return store.rejected_bills()

# --- bills and payments ----------------------------------------------------

@router.get("/bills", response_model=list[schemas.BillOut])
def list_bills(store: UserStore = Depends(get_user_store)):
    bills = store.active_bills().order_by(models.Bill.due_day.asc(), models.Bill.id.asc()).all()
    return [_bill_out(store, bill) for bill in bills]

@router.post("/bills", response_model=schemas.BillOut, status_code=201)
def create_bill(body: schemas.BillCreate, store: UserStore = Depends(get_user_store)):
    outcome = bill_service.create_bill(store, bill_service.BillDraft(**body.model_dump()))
    if isinstance(outcome, bill_service.InvalidBill):
        raise HTTPException(status_code=400, detail={"error": outcome.error, "message": outcome.message})
    if isinstance(outcome, bill_service.BillLimitReached):
        raise HTTPException(status_code=403, detail={
            "error": "Bill limit reached",
            "message": outcome.message,
            "upgrade_required": True,
            "current_count": outcome.current_count,
            "limit": outcome.limit,
            "tier": outcome.tier,
        })
    return _bill_out(store, outcome.bill)

@router.delete("/bills/{bill_id}")
def delete_bill(bill_id: int, store: UserStore = Depends(get_user_store)):
    bill_service.deactivate_bill(store, _get_owned_bill(store, bill_id))
    return {"success": True}

@router.get("/bills/{bill_id}/payments", response_model=list[schemas.PaymentOut])
def list_payments(bill_id: int, store: UserStore = Depends(get_user_store)):
    bill = _get_owned_bill(store, bill_id)
    return store.payments_for(bill).order_by(models.Payment.paid_at.desc()).all()

@router.post("/bills/{bill_id}/payments", response_model=schemas.PaymentOut, status_code=201)
def mark_bill_paid(bill_id: int, body: schemas.PaymentCreate = schemas.PaymentCreate(),
                   store: UserStore = Depends(get_user_store)):
    bill = _get_owned_bill(store, bill_id)
    if body.amount is not None and body.amount <= 0:
        raise HTTPException(status_code=400, detail="Amount must be greater than 0")
    return bill_service.mark_paid(store, bill, amount=body.amount, notes=body.notes)

@router.delete("/bills/{bill_id}/payments/latest")
def undo_bill_payment(bill_id: int, store: UserStore = Depends(get_user_store)):
    bill = _get_owned_bill(store, bill_id)
    payment = bill_service.undo_payment(store, bill)
    if payment is None:
        raise HTTPException(status_code=404, detail="No payment recorded this period")
    return {"success": True, "payment_id": payment.id}

# --- categorization --------------------------------------------------------

@router.post("/categorize")
def categorize_bill(body: schemas.CategorizeRequest, store: UserStore = Depends(get_user_store),
                    llm_client=Depends(get_llm_client), model: str = Depends(get_llm_model)):
    bill_name = body.bill_name.strip()
    if not bill_name:
        raise HTTPException(status_code=400, detail="Bill name required")
    if llm_client is not None and can_access_ai(tier_of(store.preferences())):
        category = BillExtractor(llm_client, model).categorize(bill_name)
        if category:
            return {"category": category, "method": "ai"}
    return {"category": fallback_categorize(bill_name), "method": "fallback"}

# --- preferences -----------------------------------------------------------

@router.get("/preferences", response_model=schemas.PreferencesOut)
def get_preferences(current_user: models.User = Depends(get_current_user),
                    store: UserStore = Depends(get_user_store)):
    prefs = store.preferences()
    if prefs is None:
        return schemas.PreferencesOut(email=current_user.email)
    out = schemas.PreferencesOut.model_validate(prefs)
    out.google_connected = bool(prefs.google_access_token)
    return out

@router.put("/preferences")
def update_preferences(body: schemas.PreferencesUpdate, current_user: models.User = Depends(get_current_user),
                       store: UserStore = Depends(get_user_store)):
    prefs = store.get_or_create_preferences()
    prefs.reminder_enabled = body.reminder_enabled
    prefs.reminder_days = body.reminder_days
    prefs.gmail_sync_enabled = body.gmail_sync_enabled
    prefs.google_calendar_id = body.google_calendar_id or "primary"
    prefs.email = body.email or current_user.email
    store.commit()
    return {"success": True}

@router.delete("/preferences/google")
def disconnect_google(store: UserStore = Depends(get_user_store)):
    prefs = store.preferences()
    if prefs is not None:
        prefs.google_access_token = None
        prefs.google_refresh_token = None
        prefs.google_token_expiry = None
        prefs.gmail_sync_enabled = False
        prefs.last_gmail_sync = None
        store.commit()
    return {"success": True}

# --- calendar --------------------------------------------------------------

@router.post("/sync-calendar")
def sync_bill_calendar(body: schemas.CalendarSyncRequest, store: UserStore = Depends(get_user_store),
                       oauth=Depends(get_google_oauth), calendar_factory=Depends(get_calendar_factory)):
    if body.action not in ("create", "update", "delete"):
        raise HTTPException(status_code=400, detail="Invalid action")
    access_token = _google_access_token(store, oauth)
    bill = _get_owned_bill(store, body.bill_id)
    calendar = calendar_factory(access_token, store.preferences().google_calendar_id)

    try:
        if body.action == "delete":
            if bill.google_event_id:
                calendar.delete_event(bill.google_event_id)
                bill.google_event_id = None
                store.commit()
            return {"success": True}

        if body.action == "update" and bill.google_event_id:
            calendar.update_event(bill, bill.google_event_id)
            return {"success": True, "event_id": bill.google_event_id}

        event_id = calendar.create_event(bill)
        if event_id:
            bill.google_event_id = event_id
            store.commit()
        return {"success": True, "event_id": event_id}
    except requests.RequestException as e:
        logger.error(f"Calendar sync error for bill {bill.id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to sync calendar")

@router.put("/sync-calendar")
def sync_all_bills_calendar(store: UserStore = Depends(get_user_store), oauth=Depends(get_google_oauth),
                            calendar_factory=Depends(get_calendar_factory)):
    access_token = _google_access_token(store, oauth)
    bills = store.active_bills().filter(models.Bill.google_event_id.is_(None)).all()
    if not bills:
        return {"message": "No bills to sync", "synced": 0, "total": 0}

    calendar = calendar_factory(access_token, store.preferences().google_calendar_id)
    synced = sync_all_bills(calendar, bills)
    store.commit()
    return {"message": "Calendar sync completed", "synced": synced, "total": len(bills)}

# --- reminders -------------------------------------------------------------

@router.post("/send-reminders")
def send_reminders(x_cron_secret: str = Header(None), db: Session = Depends(get_db),
                   sender=Depends(get_reminder_sender)):
    """Cron entry point; walks every owner, so it needs the shared secret rather than a user token."""
    if not settings.CRON_SECRET or x_cron_secret != settings.CRON_SECRET:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return reminder_service.send_due_reminders(ServiceStore(db), sender)

@router.get("/send-reminders")
def send_test_reminder(store: UserStore = Depends(get_user_store), sender=Depends(get_reminder_sender)):
    prefs = store.preferences()
    if prefs is None or not prefs.email:
        raise HTTPException(status_code=400, detail="No email configured for reminders")
    return reminder_service.send_test_reminder(store, sender)

@router.get("/user/me")
def get_current_user_info(current_user: models.User = Depends(get_current_user),
                          store: UserStore = Depends(get_user_store)):
    return {
        "id": current_user.id,
        "email": current_user.email,
        "name": current_user.name,
        "subscription_tier": tier_of(store.preferences()),
    }

# --- background tasks ------------------------------------------------------

@celery_app.task(name="paypulse.tasks.sync_gmail_inbox")
def sync_gmail_inbox(user_id: int):
    logger.info(f"Starting Gmail sync for user ID {user_id}")
    llm_client = get_llm_client()
    if llm_client is None:
        logger.error("Azure OpenAI is not configured, skipping Gmail sync")
        return "Bill extraction model is not configured"

    db = SessionLocal()
    try:
        result = run_gmail_sync(UserStore(db, user_id), get_google_oauth(), get_gmail_factory(),
                                llm_client, get_llm_model())
        if isinstance(result, GoogleNotConnected):
            logger.error(f"Google account not connected for user {user_id}")
            return result.message
        return asdict(result)
    except Exception as e:
        db.rollback()
        logger.exception(f"Gmail sync failed for user {user_id}: {e}")
        return f"Gmail sync failed: {str(e)}"
    finally:
        db.close()

@celery_app.task(name="paypulse.tasks.send_bill_reminders")
def send_bill_reminders():
    db = SessionLocal()
    try:
        return reminder_service.send_due_reminders(ServiceStore(db), get_reminder_sender())
    finally:
        db.close()
