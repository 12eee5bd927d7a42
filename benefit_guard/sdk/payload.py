"""
Mapping of the lookup service's JSON body onto :class:`BenefitPayload`.
"""

import re
from typing import Any, Dict, Optional

from benefit_guard.storage.models import BenefitPayload

_COMPACT_DATE = re.compile(r"^\d{8}$")


def convert_date(value: Any) -> Optional[str]:
    """Turn a ``DDMMYYYY`` date into ``YYYY-MM-DD``.

    Blank or non-string values become None; any other string passes through.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    clean = value.strip()
    if _COMPACT_DATE.match(clean):
        return f"{clean[4:8]}-{clean[2:4]}-{clean[0:2]}"
    return value


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _amount(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _count(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _name(value: Any) -> Optional[str]:
    # only a non-blank string counts as a resolved identity
    if isinstance(value, str) and value.strip():
        return value
    return None


def parse_payload(data: Dict[str, Any]) -> BenefitPayload:
    """Build a typed payload from the raw response body."""
    account = data.get("disbursementBankAccount")
    if not isinstance(account, dict):
        account = {}
    return BenefitPayload(
        name=_name(data.get("name")),
        state=_text(data.get("state")),
        alimony=_text(data.get("alimony")),
        birth_date=convert_date(data.get("birthDate")),
        block_type=_text(data.get("blockType")),
        grant_date=convert_date(data.get("grantDate")),
        credit_type=_text(data.get("creditType")),
        benefit_card_limit=_amount(data.get("benefitCardLimit")),
        benefit_card_balance=_amount(data.get("benefitCardBalance")),
        consigned_card_limit=_amount(data.get("consignedCardLimit")),
        consigned_card_balance=_amount(data.get("consignedCardBalance")),
        benefit_status=_text(data.get("benefitStatus")),
        benefit_end_date=convert_date(data.get("benefitEndDate")),
        consigned_credit_balance=_amount(data.get("consignedCreditBalance")),
        max_total_balance=_amount(data.get("maxTotalBalance")),
        used_total_balance=_amount(data.get("usedTotalBalance")),
        # the provider reports no separate available total; the card balance is used
        available_total_balance=_amount(data.get("benefitCardBalance")),
        query_date=convert_date(data.get("queryDate")),
        query_return_date=convert_date(data.get("queryReturnDate")),
        query_return_time=_text(data.get("queryReturnTime")),
        legal_representative_name=_text(data.get("legalRepresentativeName")),
        disbursement_bank=_text(account.get("bank")),
        disbursement_branch=_text(account.get("branch")),
        disbursement_account=_text(account.get("number")),
        disbursement_digit=_text(account.get("digit")),
        portability_count=_count(data.get("numberOfActiveSuspendedReservations")),
    )
