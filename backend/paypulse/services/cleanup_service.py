from collections import OrderedDict
from decimal import Decimal
from loguru import logger
from paypulse import models
from paypulse.store import UserStore

# Card product words that vary between statements from the same issuer
CARD_DESCRIPTORS = {
    "card", "credit", "visa", "mastercard", "amex", "business", "cash",
    "ink", "freedom", "sapphire", "platinum", "rewards",
}


def main_keyword(name: str) -> str:
    """First word of the name after dropping card descriptors ("chase" for "Chase Ink Business Cash Visa")."""
    normalized = (name or "").strip().lower()
    words = [word for word in normalized.split() if word not in CARD_DESCRIPTORS]
    return words[0] if words else normalized


def duplicate_key(bill: models.Bill) -> str:
    amount = Decimal(str(bill.amount)).quantize(Decimal("0.01"))
    return f"{main_keyword(bill.name)}|{amount}|{bill.due_day}"


def cleanup_duplicate_bills(store: UserStore) -> int:
    """
    Deactivate all but the oldest active bill in each duplicate group.

    Groups on main keyword + amount + due day, which is coarser than the
    per-sync match and catches renamed card products. Returns the number of
    bills deactivated.
    """
    bills = store.active_bills().order_by(models.Bill.created_at.asc(), models.Bill.id.asc()).all()
    groups = OrderedDict()
    for bill in bills:
        groups.setdefault(duplicate_key(bill), []).append(bill)

    removed = 0
    for key, group in groups.items():
        if len(group) < 2:
            continue
        keep, duplicates = group[0], group[1:]
        logger.info(f"Found {len(duplicates)} duplicates for: {keep.name} ({key})")
        for duplicate in duplicates:
            duplicate.is_active = False
            removed += 1

    if removed:
        store.commit()
    return removed
