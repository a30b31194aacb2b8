from typing import Optional

BILL_CATEGORIES = [
    "Utilities",
    "Subscriptions",
    "Insurance",
    "Housing",
    "Transportation",
    "Healthcare",
    "Credit Cards",
    "Food & Dining",
    "Entertainment",
    "Other",
]

CATEGORY_KEYWORDS = {
    "Credit Cards": ["credit card", "visa", "mastercard", "amex", "american express", "discover",
                     "capital one", "citi", "chase"],
    "Utilities": ["electric", "electricity", "gas", "water", "sewer", "trash", "garbage", "utility",
                  "power", "energy", "pge", "pg&e", "edison", "sdg&e"],
    "Subscriptions": ["netflix", "hulu", "disney", "spotify", "apple music", "youtube", "amazon prime",
                      "hbo", "paramount", "peacock", "subscription", "membership", "adobe",
                      "microsoft 365", "dropbox", "icloud"],
    "Insurance": ["insurance", "allstate", "geico", "progressive", "state farm", "liberty mutual",
                  "farmers", "usaa", "aetna", "cigna", "kaiser", "anthem", "blue cross", "united health"],
    "Housing": ["rent", "mortgage", "hoa", "property tax", "home", "apartment", "housing", "landlord",
                "lease"],
    "Transportation": ["car", "auto", "vehicle", "gas station", "fuel", "uber", "lyft", "parking", "toll",
                       "transit", "metro", "bus pass", "car payment", "lease payment"],
    "Healthcare": ["doctor", "hospital", "medical", "health", "dental", "vision", "pharmacy",
                   "prescription", "cvs", "walgreens", "clinic", "therapy", "mental health"],
    "Food & Dining": ["restaurant", "doordash", "ubereats", "grubhub", "meal kit", "blue apron",
                      "hello fresh", "dining", "food delivery"],
    "Entertainment": ["gym", "fitness", "planet fitness", "24 hour", "games", "gaming", "xbox",
                      "playstation", "nintendo", "twitch", "discord nitro", "vpn", "nordvpn"],
}

def normalize_category(value) -> Optional[str]:
    """Return the canonical category name for a case-insensitive match, else None."""
    if not isinstance(value, str):
        return None
    wanted = value.strip().lower()
    for category in BILL_CATEGORIES:
        if category.lower() == wanted:
            return category
    return None

def fallback_categorize(bill_name: Optional[str]) -> str:
    """Keyword categorization used when AI categorization is unavailable."""
    name = (bill_name or "").lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        if any(keyword in name for keyword in keywords):
            return category
    return "Other"
