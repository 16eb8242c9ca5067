"""
Weighted Reallocation Engine - blend the signed plan with social intent.

Runs only when intent verification reports a low intent-match score. The
blend ratio is fixed by the constitution (80% will / 20% social), not
derived from the score:

    existing beneficiary:   P_will x 0.80            (x 0.5 more on a REMOVE signal)
    social-only ADD:        min(P_social x 0.20, 30)

Shares are then normalized to exactly 100.0 by largest remainder and the
30% cap is re-applied to social-only entries, with the excess returned
to the will's beneficiaries. Last, any existing beneficiary pushed below
its floor (P_will x 0.80 x 0.5) by normalization is lifted back to it,
the shortfall taken from the social-only entries.

All share arithmetic is Decimal. Pre-normalization shares (what the
adjustment log records) keep full precision.
"""

import logging
from dataclasses import dataclass, field, replace
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from enum import Enum
from typing import Iterable, Optional

from .constitution import DEFAULT_SOCIAL_BENEFICIARY_WALLET, DISTRIBUTION_LAWS
from .llm import LLMClient
from .models import Beneficiary

logger = logging.getLogger("silene.reallocation")

HUNDRED = Decimal(100)
TENTH = Decimal("0.1")


class IntentAction(str, Enum):
    ADD = "ADD"
    REMOVE = "REMOVE"
    ADJUST = "ADJUST"


class AdjustmentSource(str, Enum):
    WILL = "WILL"
    SOCIAL = "SOCIAL"
    BLEND = "BLEND"


class Recommendation(str, Enum):
    EXECUTE = "EXECUTE"
    REVIEW = "REVIEW"


def _clamp_pct(value) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return 0.0
    if v != v:  # NaN
        return 0.0
    return max(0.0, min(100.0, v))


def _dec(value) -> Decimal:
    return Decimal(str(value))


@dataclass
class SocialBeneficiary:
    """One quantified social intent."""
    name: str
    percentage: float
    action: IntentAction
    intent: str = ""
    relationship: str = "unknown"
    trust_score: float = 0.0

    @classmethod
    def from_dict(cls, d: dict) -> Optional["SocialBeneficiary"]:
        """None for entries that can't be used (no name, unknown action)."""
        if not isinstance(d, dict):
            return None
        name = str(d.get("name") or "").strip()
        if not name:
            return None
        try:
            action = IntentAction(str(d.get("action", "")).upper())
        except ValueError:
            return None
        return cls(
            name=name,
            percentage=_clamp_pct(d.get("percentage", 0)),
            action=action,
            intent=str(d.get("intent") or ""),
            relationship=str(d.get("relationship") or "unknown"),
            trust_score=_clamp_pct(d.get("trustScore", 0)),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "percentage": self.percentage,
            "action": self.action.value,
            "intent": self.intent,
            "relationship": self.relationship,
            "trustScore": self.trust_score,
        }


@dataclass
class AdjustmentEntry:
    beneficiary: str
    original_percentage: float
    adjusted_percentage: float      # pre-normalization, full precision
    reason: str
    source: AdjustmentSource

    def to_dict(self) -> dict:
        return {
            "beneficiary": self.beneficiary,
            "originalPercentage": self.original_percentage,
            "adjustedPercentage": self.adjusted_percentage,
            "reason": self.reason,
            "source": self.source.value,
        }


@dataclass
class ReallocationResult:
    adjusted: list[Beneficiary]
    will_weight: float
    social_weight: float
    adjustment_log: list[AdjustmentEntry] = field(default_factory=list)
    recommendation: Recommendation = Recommendation.EXECUTE

    def to_dict(self) -> dict:
        return {
            "adjustedBeneficiaries": [b.to_dict() for b in self.adjusted],
            "willWeight": self.will_weight,
            "socialWeight": self.social_weight,
            "adjustmentLog": [e.to_dict() for e in self.adjustment_log],
            "recommendation": self.recommendation.value,
        }


# ============================================================
# NORMALIZATION (pure)
# ============================================================

def _largest_remainder(values: list[Decimal], target: Decimal) -> list[Decimal]:
    """Scale to target, floor to 0.1, give the residual to the largest share."""
    total = sum(values, Decimal(0))
    if total <= 0:
        return list(values)
    factor = target / total
    scaled = [(v * factor).quantize(TENTH, rounding=ROUND_FLOOR) for v in values]
    diff = target - sum(scaled, Decimal(0))
    if diff != 0 and scaled:
        # first index wins on ties
        largest = max(range(len(scaled)), key=lambda i: (scaled[i], -i))
        scaled[largest] += diff
    return scaled


def normalize_to_hundred(values: Iterable) -> list[Decimal]:
    """
    Largest-remainder normalization to exactly 100.0 at one decimal.

    A list that already sums to 100.0 (one-decimal values) comes back
    unchanged.
    """
    return _largest_remainder([_dec(v) for v in values], HUNDRED)


def _recap_social(shares: list[Decimal], social_idx: set[int], cap: Decimal) -> list[Decimal]:
    """Re-apply the social-only cap after normalization."""
    shares = list(shares)
    will_idx = [i for i in range(len(shares)) if i not in social_idx]
    excess = Decimal(0)
    for i in social_idx:
        if shares[i] > cap:
            excess += shares[i] - cap
            shares[i] = cap
    if excess == 0 or not will_idx:
        return shares
    will_values = [shares[i] for i in will_idx]
    target = sum(will_values, Decimal(0)) + excess
    for i, v in zip(will_idx, _largest_remainder(will_values, target)):
        shares[i] = v
    return shares


def _shrink(values: list[Decimal], target: Decimal) -> list[Decimal]:
    """Scale down to target at 0.1; leftover tenths go to the largest remainders."""
    total = sum(values, Decimal(0))
    if total <= 0:
        return list(values)
    exact = [v * target / total for v in values]
    scaled = [e.quantize(TENTH, rounding=ROUND_FLOOR) for e in exact]
    steps = int((target - sum(scaled, Decimal(0))) / TENTH)
    order = sorted(range(len(values)), key=lambda i: (scaled[i] - exact[i], i))
    for i in order[:steps]:
        scaled[i] += TENTH
    return scaled


def _lift_to_floor(shares: list[Decimal], floors: list[Decimal], social_idx: set[int]) -> list[Decimal]:
    """Raise will beneficiaries (the first len(floors) shares) to their floor."""
    shares = list(shares)
    shortfall = sum((max(f - shares[i], Decimal(0)) for i, f in enumerate(floors)), Decimal(0))
    if shortfall == 0:
        return shares
    social = sorted(social_idx)
    available = sum((shares[i] for i in social), Decimal(0))
    if shortfall > available:
        # only reachable when the signed plan sums above 100
        logger.warning(f"Floor shortfall {shortfall} exceeds social shares {available}, left as is")
        return shares
    for i, f in enumerate(floors):
        shares[i] = max(shares[i], f)
    for i, v in zip(social, _shrink([shares[i] for i in social], available - shortfall)):
        shares[i] = v
    return shares


# ============================================================
# BLEND (pure)
# ============================================================

def blend(
    will_beneficiaries: list[Beneficiary],
    social: list[SocialBeneficiary],
    will_weight: float = DISTRIBUTION_LAWS.WILL_WEIGHT,
    social_weight: float = DISTRIBUTION_LAWS.SOCIAL_WEIGHT,
    social_wallet: str = DEFAULT_SOCIAL_BENEFICIARY_WALLET,
) -> ReallocationResult:
    ww, sw = _dec(will_weight), _dec(social_weight)
    removal = _dec(DISTRIBUTION_LAWS.REMOVAL_FACTOR)
    cap = _dec(DISTRIBUTION_LAWS.SOCIAL_ADD_CAP_PCT)

    log: list[AdjustmentEntry] = []
    adjusted: list[Beneficiary] = []
    raw: list[Decimal] = []

    # Existing beneficiaries: the will keeps most of the weight
    for wb in will_beneficiaries:
        wb_name = wb.name.lower()
        exclusion = next(
            (sb for sb in social
             if sb.action == IntentAction.REMOVE and wb_name and wb_name in sb.name.lower()),
            None,
        )
        share = _dec(wb.percentage) * ww
        reason = f"will x {will_weight:.0%}"
        source = AdjustmentSource.WILL
        if exclusion is not None:
            # halved, never zeroed
            share = share * removal
            reason = f"social removal signal ({exclusion.intent or exclusion.name}), floor kept"
            source = AdjustmentSource.BLEND

        log.append(AdjustmentEntry(wb.name, wb.percentage, float(share), reason, source))
        adjusted.append(replace(wb, reason=f"{wb.reason} [adjusted: {reason}]".strip()))
        raw.append(share)

    # Social-only additions, one per name
    social_idx: set[int] = set()
    seen: set[str] = set()
    for sb in social:
        key = sb.name.lower()
        if sb.action != IntentAction.ADD or key in seen:
            continue
        if any(key in wb.name.lower() for wb in will_beneficiaries):
            continue
        seen.add(key)

        share = min(_dec(sb.percentage) * sw, cap)
        reason = f"social addition ({sb.relationship}): {sb.intent}"
        log.append(AdjustmentEntry(sb.name, 0.0, float(share), reason, AdjustmentSource.SOCIAL))
        social_idx.add(len(adjusted))
        adjusted.append(Beneficiary(
            address=social_wallet,
            percentage=0.0,
            name=sb.name,
            category=sb.relationship or "unknown",
            reason=f'extracted from social media: "{sb.intent}"',
        ))
        raw.append(share)

    floors = [
        (_dec(wb.percentage) * ww * removal).quantize(TENTH, rounding=ROUND_CEILING)
        for wb in will_beneficiaries
    ]
    final = _recap_social(normalize_to_hundred(raw), social_idx, cap)
    final = _lift_to_floor(final, floors, social_idx)
    for b, pct in zip(adjusted, final):
        b.percentage = float(pct)

    recommendation = (
        Recommendation.REVIEW
        if social_weight > DISTRIBUTION_LAWS.REVIEW_SOCIAL_WEIGHT
        else Recommendation.EXECUTE
    )
    for e in log:
        logger.info(
            f"  {e.beneficiary}: {e.original_percentage}% -> {e.adjusted_percentage:.4g}% ({e.source.value})"
        )
    return ReallocationResult(
        adjusted=adjusted,
        will_weight=will_weight,
        social_weight=social_weight,
        adjustment_log=log,
        recommendation=recommendation,
    )


# ============================================================
# LLM QUANTIFIER
# ============================================================

QUANTIFY_SYSTEM_PROMPT = """You are an AI that converts natural language user intentions into structured beneficiary allocations.

Given a list of user intentions extracted from their social media, convert each into a structured action.

Rules:
1. For "give all to X" type intents -> X gets 100%, action: ADD
2. For "exclude X" type intents -> X gets 0%, action: REMOVE
3. For "my friend/partner/family X" -> X gets 10-20%, action: ADD
4. Estimate trustScore 0-100 based on how explicit the intent is
5. Identify relationship type (friend, family, partner, charity, etc.)

Output in {language}.

Return a JSON object {{"beneficiaries": [...]}} whose items contain:
- name: string (person/entity name)
- percentage: number (0-100)
- intent: string (original intent text)
- relationship: string (friend, family, partner, charity, unknown)
- trustScore: number (0-100)
- action: "ADD" | "REMOVE" | "ADJUST"
"""


def _language(lang: str) -> str:
    return "Chinese (Simplified)" if lang == "zh" else "English"


class IntentQuantifier:
    """Turns free-text intents into SocialBeneficiary entries via the LLM."""

    def __init__(self, llm: LLMClient):
        self.llm = llm

    async def quantify(self, intents: list[str], lang: str = "en") -> list[SocialBeneficiary]:
        if not intents:
            return []
        user = (
            "Convert these intentions to structured beneficiaries:\n"
            + "\n".join(f"{i + 1}. {text}" for i, text in enumerate(intents))
            + "\n\nReturn ONLY valid JSON."
        )
        try:
            parsed = await self.llm.complete_json(
                QUANTIFY_SYSTEM_PROMPT.format(language=_language(lang)), user
            )
        except Exception as e:
            logger.warning(f"Intent quantification failed, using neutral result: {e}")
            return []

        items = parsed if isinstance(parsed, list) else (
            parsed.get("beneficiaries", []) if isinstance(parsed, dict) else []
        )
        if not isinstance(items, list):
            return []
        result = [sb for sb in (SocialBeneficiary.from_dict(i) for i in items) if sb is not None]
        logger.info(f"Quantified {len(result)} social intents ({len(items)} returned)")
        return result


class ReallocationEngine:
    """
    Usage:
        engine = ReallocationEngine(IntentQuantifier(llm))
        if engine.should_reallocate(verification.intent_match):
            result = await engine.reallocate(will.beneficiaries, intents, match)
    """

    def __init__(
        self,
        quantifier: IntentQuantifier,
        will_weight: float = DISTRIBUTION_LAWS.WILL_WEIGHT,
        social_weight: float = DISTRIBUTION_LAWS.SOCIAL_WEIGHT,
        social_wallet: str = DEFAULT_SOCIAL_BENEFICIARY_WALLET,
    ):
        self.quantifier = quantifier
        self.will_weight = will_weight
        self.social_weight = social_weight
        self.social_wallet = social_wallet

    @staticmethod
    def should_reallocate(intent_match: float) -> bool:
        return intent_match < DISTRIBUTION_LAWS.INTENT_MATCH_THRESHOLD

    async def reallocate(
        self,
        will_beneficiaries: list[Beneficiary],
        extracted_intents: list[str],
        intent_match: float,
        lang: str = "en",
    ) -> ReallocationResult:
        logger.info(
            f"Reallocating (intentMatch={intent_match}%, will={self.will_weight:.0%}, "
            f"social={self.social_weight:.0%})"
        )
        social = await self.quantifier.quantify(extracted_intents, lang)
        return blend(
            [replace(b) for b in will_beneficiaries],
            social,
            will_weight=self.will_weight,
            social_weight=self.social_weight,
            social_wallet=self.social_wallet,
        )
