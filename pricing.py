"""
Service catalog and price quotes.

There are no list prices: an admin quotes each user individually. A quote is
``pending`` until the user accepts or rejects it, and both outcomes are
terminal. The pending guard lives in the write itself (find_one_and_update on
status), so a quote can only ever transition once.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

import audit
import config
import database
from errors import InvalidTransition, NotFound, ValidationError
from schemas import PriceQuote

logger = logging.getLogger(__name__)

COLLECTION = "price_quote"
CATEGORIES = ("love", "protection", "wealth", "justice", "artifacts")


def _service(service_id, name, description, category, duration, what_to_expect, preparation, max_installments=None):
    return {
        "service_id": service_id,
        "name": name,
        "description": description,
        "category": category,
        "duration": duration,
        "what_to_expect": what_to_expect,
        "preparation": preparation,
        "installment_eligible": max_installments is not None,
        "max_installments": max_installments,
    }


SERVICES_CATALOG: Dict[str, Dict[str, Any]] = {
    s["service_id"]: s
    for s in [
        _service("get_back_lost_items", "Get Back Lost Items", "Retrieval spell to recover lost or stolen items", "justice", "3-7 days",
                 "Spiritual ritual to locate and return your lost belongings", "Provide details about the lost item and when it was lost"),
        _service("land_solving", "Land Solving Spell", "Property resolution and land dispute resolution magic", "justice", "7-14 days",
                 "Ancient land-solving rituals to resolve property conflicts", "Details of the property dispute and all parties involved", 3),
        _service("obsession_spell", "Obsession Spell", "Create powerful attraction and romantic obsession", "love", "7-21 days",
                 "Powerful attraction ritual to capture someone's attention and affection", "Name, birth date, and photo of the target (if possible)", 3),
        _service("stop_cheating", "Stop Cheating Spell", "Loyalty binding and infidelity prevention", "love", "5-10 days",
                 "Binding ritual to seal your partner's loyalty and prevent cheating", "Your partner's name and birth date"),
        _service("binding_spell", "Binding Spell", "Commitment and relationship binding magic", "love", "7-14 days",
                 "Ritual to deepen commitment and bind two souls together", "Both people's names and birth dates", 3),
        _service("gay_lesbian_spell", "Gay & Lesbian Spell", "Love magic for LGBTQ+ relationships and attraction", "love", "7-14 days",
                 "Inclusive love magic tailored to LGBTQ+ relationships", "Partner or crush's name and birth date", 3),
        _service("court_case", "Winning a Court Case", "Justice magic for favorable court outcomes", "justice", "14-30 days",
                 "Powerful justice ritual to influence court proceedings in your favor", "Details of the case and court date", 4),
        _service("business_boost", "Business Boost Spells", "Prosperity magic for business growth and success", "wealth", "14-21 days",
                 "Ritual to attract more customers, sales, and business opportunities", "Business name, type, and your goals for growth", 4),
        _service("cleansing_rituals", "Cleansing Rituals", "Spiritual purification and negative energy removal", "protection", "3-7 days",
                 "Deep cleansing to remove negative energy and spiritual blocks", "Description of negative energy or blockages you're experiencing"),
        _service("divorce_spell", "Divorce Spell", "Separation and relationship dissolution magic", "love", "14-30 days",
                 "Ritual to facilitate peaceful or swift separation/divorce", "Both people's names, birth dates, and marriage details", 4),
        _service("marriage_commitment", "Marriage & Commitment", "Union blessing and commitment strengthening", "love", "7-14 days",
                 "Ritual to bless your union and strengthen commitment between partners", "Both people's names and birth dates", 3),
        _service("magic_wallet", "Magic Wallet", "Enchanted artifact for wealth attraction", "artifacts", "3-5 days",
                 "An enchanted wallet artifact to attract money and wealth", "None required - artifact is created and blessed"),
        _service("financial_issues", "Financial Issues", "Abundance magic for financial problem resolution", "wealth", "7-14 days",
                 "Ritual to overcome financial hardship and attract abundance", "Details of your financial situation and goals", 3),
        _service("protection_shielding", "Protection & Shielding", "Defensive magic and spiritual protection", "protection", "5-7 days",
                 "Protective shield against negative intentions and spiritual harm", "Description of threats or negative energy you're protecting against"),
        _service("magic_rings", "Magic Rings", "Enchanted ring artifacts with magical properties", "artifacts", "3-7 days",
                 "Personalized enchanted ring with specific magical properties", "Your birth date and intention for the ring"),
    ]
}


def get_service_config(service_id: str) -> Dict[str, Any]:
    service = SERVICES_CATALOG.get(service_id)
    if service is None:
        raise ValidationError(f"Invalid service: {service_id}")
    return service


def get_all_services() -> List[Dict[str, Any]]:
    return list(SERVICES_CATALOG.values())


def get_services_by_category(category: str) -> List[Dict[str, Any]]:
    return [s for s in SERVICES_CATALOG.values() if s["category"] == category]


def get_service_by_name(name: str) -> Optional[Dict[str, Any]]:
    for s in SERVICES_CATALOG.values():
        if s["name"].lower() == (name or "").lower():
            return s
    return None


def calculate_installment_amount(quoted_price: float, number_of_installments: int) -> float:
    if number_of_installments <= 0:
        raise ValidationError("Number of installments must be greater than 0")
    return round(quoted_price / number_of_installments, 2)


def get_installment_options(service_id: str, quoted_price: float) -> List[Dict[str, Any]]:
    service = get_service_config(service_id)
    if not service["installment_eligible"] or not service["max_installments"]:
        return []
    return [
        {
            "number_of_installments": n,
            "installment_amount": calculate_installment_amount(quoted_price, n),
            "total_cost": quoted_price,
        }
        for n in range(2, service["max_installments"] + 1)
    ]


# Quotes

def _col():
    return database.collection(COLLECTION)


def _oid_or_404(quote_id: str):
    oid = database.parse_object_id(quote_id)
    if oid is None:
        raise NotFound("Quote not found")
    return oid


def create_price_quote(
    user_id: str,
    service_id: str,
    service_name: str,
    quoted_price: float,
    notes: Optional[str] = None,
    valid_days: int = 7,
    created_by: Optional[str] = None,
) -> Dict[str, Any]:
    if quoted_price is None or quoted_price <= 0:
        raise ValidationError("Quoted price must be greater than 0")
    if valid_days is None or valid_days <= 0:
        raise ValidationError("validDays must be greater than 0")
    quote = PriceQuote(
        user_id=str(user_id),
        service_id=service_id,
        service_name=service_name,
        quoted_price=quoted_price,
        currency=config.DEFAULT_CURRENCY,
        notes=notes,
        valid_until=database.utcnow() + timedelta(days=valid_days),
    )
    quote_id = database.create_document(COLLECTION, quote)
    logger.info("Price quote %s created for user %s (%s, %.2f)", quote_id, user_id, service_id, quoted_price)
    created = get_price_quote(quote_id)
    if created_by:
        audit.record(created_by, "quote.create", COLLECTION, quote_id, None, created)
    return created


def get_price_quote(quote_id: str) -> Optional[Dict[str, Any]]:
    oid = database.parse_object_id(quote_id)
    if oid is None:
        return None
    return _col().find_one({"_id": oid})


def _why_not_pending(oid) -> None:
    """Raise the error that explains why a conditional quote write matched nothing."""
    current = _col().find_one({"_id": oid})
    if current is None:
        raise NotFound("Quote not found")
    if current.get("status") != "pending":
        raise InvalidTransition(f"Quote already {current.get('status')}")
    raise ValidationError("Quote has expired")


def accept_price_quote(quote_id: str) -> Dict[str, Any]:
    oid = _oid_or_404(quote_id)
    now = database.utcnow()
    updated = _col().find_one_and_update(
        {"_id": oid, "status": "pending", "valid_until": {"$gte": now}},
        {"$set": {"status": "accepted", "accepted_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        _why_not_pending(oid)
    logger.info("Price quote %s accepted", quote_id)
    return updated


def reject_price_quote(quote_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    oid = _oid_or_404(quote_id)
    now = database.utcnow()
    updated = _col().find_one_and_update(
        {"_id": oid, "status": "pending"},
        {"$set": {"status": "rejected", "rejected_at": now, "rejection_reason": reason, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        _why_not_pending(oid)
    logger.info("Price quote %s rejected", quote_id)
    return updated


def update_price_quote(
    quote_id: str,
    new_price: Optional[float] = None,
    new_notes: Optional[str] = None,
    extend_validity_days: Optional[int] = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    oid = _oid_or_404(quote_id)
    if new_price is not None and new_price <= 0:
        raise ValidationError("Price must be greater than 0")
    now = database.utcnow()
    updates: Dict[str, Any] = {"updated_at": now}
    if new_price is not None:
        updates["quoted_price"] = new_price
    if new_notes is not None:
        updates["notes"] = new_notes
    if extend_validity_days:
        updates["valid_until"] = now + timedelta(days=extend_validity_days)

    before = _col().find_one({"_id": oid})
    updated = _col().find_one_and_update(
        {"_id": oid, "status": "pending"},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        if before is None:
            raise NotFound("Quote not found")
        raise InvalidTransition(f"Quote already {before.get('status')}")
    if actor_id:
        audit.record(actor_id, "quote.update", COLLECTION, quote_id, before, updated)
    return updated


def get_user_quotes(user_id: str) -> List[Dict[str, Any]]:
    """Quotes still valid for the user, newest first."""
    query = {"user_id": str(user_id), "valid_until": {"$gte": database.utcnow()}}
    return list(_col().find(query).sort("created_at", -1))


def get_user_accepted_quotes(user_id: str) -> List[Dict[str, Any]]:
    return list(_col().find({"user_id": str(user_id), "status": "accepted"}).sort("accepted_at", -1))


def get_pending_quotes(limit: int = 20) -> List[Dict[str, Any]]:
    query = {"status": "pending", "valid_until": {"$gte": database.utcnow()}}
    return list(_col().find(query).sort("created_at", -1).limit(limit))


def get_quote_stats() -> Dict[str, int]:
    col = _col()
    return {
        "total_quotes": col.count_documents({}),
        "accepted_quotes": col.count_documents({"status": "accepted"}),
        "pending_quotes": col.count_documents({"status": "pending", "valid_until": {"$gte": database.utcnow()}}),
        "rejected_quotes": col.count_documents({"status": "rejected"}),
    }
