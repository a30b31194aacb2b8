from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import json
import math
import re
import time
from openai import AzureOpenAI
from loguru import logger
from paypulse.config import Settings
from paypulse.services.categories import BILL_CATEGORIES, fallback_categorize, normalize_category

BATCH_SIZE = 5
BATCH_PAUSE_SECONDS = 0.5
MAX_BODY_CHARS = 8000


@dataclass
class ParsedBill:
    is_bill: bool
    name: Optional[str]
    amount: Optional[float]
    due_day: Optional[int]
    category: str
    confidence: int
    due_date_text: Optional[str] = None
    amount_text: Optional[str] = None

    @classmethod
    def not_a_bill(cls) -> "ParsedBill":
        return cls(is_bill=False, name=None, amount=None, due_day=None, category="Other", confidence=0)


def build_openai_client(settings: Settings) -> Optional[AzureOpenAI]:
    """Construct the completion client, or None when Azure OpenAI is not configured."""
    if not settings.openai_configured:
        return None
    return AzureOpenAI(
        azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
        api_key=settings.AZURE_OPENAI_KEY,
        api_version=settings.AZURE_OPENAI_API_VERSION,
        max_retries=settings.AZURE_OPENAI_MAX_RETRIES,
        timeout=settings.AZURE_OPENAI_TIMEOUT,
    )


def build_extraction_prompt(subject: str, sender: str, body: str) -> str:
    return f"""Analyze this email to detect if it contains an ACTUAL BILL with a real dollar amount.

Email Subject: {subject}
From: {sender}
Email Body:
{body[:MAX_BODY_CHARS]}

CRITICAL RULES - READ CAREFULLY:

1. SET isBill: false for these types of emails (NOT actual bills):
   - "Your statement is now available" (no amount shown, just a notification)
   - "AutoPay reminder" or "Payment reminder" without showing the actual amount
   - "Log in to view your bill" without the amount in the email
   - Account alerts, security notices, promotional emails
   - Confirmation emails for payments already made

2. COMPANY NAME EXTRACTION:
   Priority order for finding the company name:
   a) The "From:" field, e.g. "noreply@chase.com" -> "Chase", "statements@capitalone.com" -> "Capital One"
   b) The subject, e.g. "Your Amex Statement" -> "American Express", "TXU Energy Bill Ready" -> "TXU Energy"
   c) The header/logo area at the top of the body, e.g. "GEICO | Auto Insurance" -> "GEICO"
   Formatting:
   - Use the full company name, not abbreviations
   - For credit cards include the card product when mentioned ("Chase Freedom", "Chase Ink Business")
   - Avoid generic names like "Bill", "Statement", "Account", "Company"
   - A name should be 3-50 characters; random numbers or symbols mean it is probably wrong

3. AMOUNT EXTRACTION:
   FOR CREDIT CARDS (Chase, Citi, Capital One, Discover, Amex, etc.):
   - ALWAYS use the Statement Balance, NEVER the Minimum Payment
   - Search in this order and use the first one found:
     1. "Statement Balance:" or "New Balance:"
     2. "Current Balance:" or "Total Balance:"
     3. "Amount Due:" or "Total Amount Due:"
     Never use "Minimum Payment", "Minimum Due" or "Min Payment"
   - If the email shows both a Statement Balance and a Minimum Payment, use the LARGER amount
   - If only a Minimum Payment is present, set confidence to 50
   Example: "Minimum Payment: $40.00" and "Statement Balance: $2,847.23" -> amount: 2847.23
   Example: Citi email with "Payment Due Date: Friday, January 23, 2026", "Statement Balance: $3,278.44",
            "Minimum Payment Due: $95.94" -> amount: 3278.44, dueDay: 23, confidence: 90

   FOR UTILITIES/SERVICES (electric, gas, water, internet, phone):
   - "Amount Due", "Total Due", "Current Charges", "New Charges" or "Balance Due"

   FOR INSURANCE (health, auto, home, life):
   - Insurance bills are MONTHLY, not annual
   - Look for "Monthly Premium", "Monthly Payment" or "Installment Amount"
   - If only an annual premium is shown, divide it by 12:
     "Annual Premium: $3,274" -> amount: 272.83 (3274/12); "$3,000/year" -> amount: 250
   - If only an annual amount was found, keep confidence in the 60-70 range
   - A monthly insurance amount over $500 is unusual, lower confidence

4. DUE DAY EXTRACTION:
   Search patterns in priority order:
   a) Explicit labels: "Due Date:", "Payment Due:", "Due By:" ("Due Date: January 15, 2025" -> dueDay: 15)
   b) "Please pay by" / "Pay by" phrases ("Pay by the 15th" -> dueDay: 15)
   c) A table row headed "Due Date" or "Payment Due"
   d) For credit cards: statement date plus the usual 21-25 day payment period
   Date formats: "01/15/2025", "January 15, 2025", "15th of January", "Due on the 15th" -> 15
   Validation:
   - dueDay must be 1-31
   - If several dates are found, use the LATEST one
   - Do not confuse "Statement Date" or "AutoPay Date" with the due date
   - If uncertain about the due date, lower confidence by 10 points

5. VALIDATION & CONFIDENCE:
   - If there is no real dollar amount in the email, set isBill: false
   - Amount must be > 0; never guess or invent amounts
   - If amount > $2,000 and this is not a credit card, confidence is at most 70
   - If the company name is generic or unclear, lower confidence by 15 points
   - If the due date had an explicit label, raise confidence by 10 points

EXAMPLES:
- "Your Chase statement is ready. Log in to view." -> isBill: false (no amount)
- "Minimum Payment: $25, Statement Balance: $1,456.78" -> amount: 1456.78
- "Your TXU Energy bill is $162.00, due Jan 7" -> amount: 162.00, dueDay: 7
- "AutoPay scheduled for your account" -> isBill: false

Return JSON:
{{
  "isBill": boolean,
  "name": string or null,
  "amount": number or null,
  "amountText": string or null (exact text where the amount was found),
  "dueDay": number (1-31) or null,
  "dueDateText": string or null (exact text where the due date was found),
  "category": string (one of: {", ".join(BILL_CATEGORIES)}),
  "confidence": number (0-100)
}}

Only return the JSON object, no other text."""


def extract_first_json_object(content: str) -> Optional[dict]:
    """Decode the whole response, else the first ``{...}`` object embedded in free text."""
    if not content or not content.strip():
        return None
    try:
        data = json.loads(content.strip())
        return data if isinstance(data, dict) else None
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", content):
        try:
            data, _ = decoder.raw_decode(content, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _coerce_amount(value: Any) -> Optional[float]:
    if _is_number(value):
        return float(value)
    if isinstance(value, str) and value.strip():
        numeric_str = re.sub(r"[^\d.\-]", "", value)
        try:
            amount = float(numeric_str)
        except ValueError:
            amount = None
        if amount is not None and math.isfinite(amount):
            return amount
        logger.warning(f"Invalid amount value: {value}, setting to None")
    return None


def _coerce_due_day(value: Any) -> Optional[int]:
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if _is_number(value) and float(value).is_integer() and 1 <= value <= 31:
        return int(value)
    return None


def _coerce_confidence(value: Any) -> int:
    if not _is_number(value):
        return 0
    return int(round(max(0, min(100, value))))


def _coerce_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def validate_parsed_bill(data: Dict[str, Any], ai_categorization: bool = True) -> ParsedBill:
    """Coerce each field to its domain, substituting a safe default on any violation."""
    name = _coerce_text(data.get("name"))
    if ai_categorization:
        category = normalize_category(data.get("category")) or "Other"
    else:
        category = fallback_categorize(name)
    return ParsedBill(
        is_bill=data.get("isBill") is True,
        name=name,
        amount=_coerce_amount(data.get("amount")),
        due_day=_coerce_due_day(data.get("dueDay")),
        category=category,
        confidence=_coerce_confidence(data.get("confidence")),
        due_date_text=_coerce_text(data.get("dueDateText")),
        amount_text=_coerce_text(data.get("amountText")),
    )


class BillExtractor:
    """
    Turns candidate emails into ``ParsedBill`` results with a completion model.

    ``ai_categorization`` is the subscription gate: when False (free tier) the
    model's category is discarded in favour of keyword matching.
    """

    def __init__(self, client, model: str, ai_categorization: bool = True,
                 batch_size: int = BATCH_SIZE, batch_pause: float = BATCH_PAUSE_SECONDS):
        self.client = client
        self.model = model
        self.ai_categorization = ai_categorization
        self.batch_size = batch_size
        self.batch_pause = batch_pause

    def _complete(self, prompt: str, max_tokens: int = 500) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.0,
            max_tokens=max_tokens,
        )
        return response.choices[0].message.content or ""

    def parse_bill_from_email(self, subject: str, sender: str, body: str) -> ParsedBill:
        """Never raises: any failure yields ``ParsedBill.not_a_bill()``."""
        try:
            content = self._complete(build_extraction_prompt(subject or "", sender or "", body or ""))
            logger.debug(f"OpenAI raw response: {content[:100]}...")
            data = extract_first_json_object(content)
            if data is None:
                logger.error(f"No JSON object found in model response: {content[:200]}...")
                return ParsedBill.not_a_bill()
            return validate_parsed_bill(data, self.ai_categorization)
        except Exception as e:
            logger.error(f"Error parsing bill from email '{subject}': {e}")
            return ParsedBill.not_a_bill()

    def parse_bills_from_emails(self, emails: List[Any]) -> Dict[str, ParsedBill]:
        """
        Parse ``emails`` (objects with id/subject/sender/body) in concurrent
        groups of ``batch_size``, pausing between groups for rate limits.
        Returns exactly one result per email id.
        """
        results: Dict[str, ParsedBill] = {}
        batches = [emails[i:i + self.batch_size] for i in range(0, len(emails), self.batch_size)]

        with ThreadPoolExecutor(max_workers=self.batch_size) as executor:
            for batch_index, batch in enumerate(batches):
                logger.info(f"Parsing batch {batch_index + 1}/{len(batches)} with {len(batch)} emails")
                futures = {
                    email.id: executor.submit(self.parse_bill_from_email, email.subject, email.sender, email.body)
                    for email in batch
                }
                for email_id, future in futures.items():
                    try:
                        results[email_id] = future.result()
                    except Exception as e:
                        logger.error(f"Failed to parse email {email_id}: {str(e)[:100]}...")
                        results[email_id] = ParsedBill.not_a_bill()

                if batch_index < len(batches) - 1:
                    time.sleep(self.batch_pause)
        return results

    def categorize(self, bill_name: str) -> Optional[str]:
        """Ask the model for exactly one category; None when the answer is unusable."""
        prompt = (
            f"Categorize this bill into exactly one of these categories: {', '.join(BILL_CATEGORIES)}.\n\n"
            f'Bill name: "{bill_name}"\n\n'
            "Respond with ONLY the category name, nothing else."
        )
        try:
            answer = self._complete(prompt, max_tokens=50).strip().strip('".').strip()
        except Exception as e:
            logger.error(f"Categorization error: {e}")
            return None
        return normalize_category(answer)
