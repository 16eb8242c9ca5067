"""
Intent Verification - last check before irreversible transfers.

Compares the signed will with the owner's recent social activity and
produces an intent-match score. A low score routes the plan through the
weighted reallocation engine; a high score leaves it untouched.

Any failure (no LLM key, network, unparseable output) yields the neutral
verdict: not verified, zero confidence and match, REVIEW.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .constitution import DISTRIBUTION_LAWS
from .llm import LLMClient
from .models import Beneficiary
from .reallocation import ReallocationEngine, ReallocationResult

logger = logging.getLogger("silene.intent")

RECOMMENDATIONS = ("EXECUTE", "HOLD", "REVIEW")

VERIFY_SYSTEM_PROMPT = """You are the 'Intent Verification Agent' for the Silene Dead Man's Switch protocol.

CRITICAL: This is the FINAL CHECK before executing irreversible asset transfers.
The user has been inactive for a long period. Before distributing their assets, you must verify their TRUE INTENT.

Your job:
1. EXTRACT INTENTS AND RELATIONSHIPS from the user's social posts: intentions, priorities,
   values, and person names mentioned (friends, family, colleagues, partners).
2. Analyze the user's will (manifesto) and named beneficiaries.
3. MATCH ANALYSIS: do the extracted intents align with the will? Do beneficiary names in the
   will match people mentioned in social posts?
4. Look for signs of life, contradictions between will and recent statements, and signs of duress.

Output in {language}.

Return JSON with:
- isVerified: boolean (true if safe to execute)
- confidence: number 0-100
- analysis: string
- socialSummary: string
- warnings: string[]
- recommendation: "EXECUTE" | "HOLD" | "REVIEW"
- extractedIntents: string[] (intentions, priorities AND mentioned person relationships)
- intentMatch: number 0-100 (how well the will matches social evidence)
"""


def _score(value, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    if v != v:
        return default
    return max(0.0, min(100.0, v))


@dataclass
class IntentVerification:
    is_verified: bool
    confidence: float
    analysis: str
    social_summary: str
    recommendation: str = "REVIEW"
    warnings: list[str] = field(default_factory=list)
    extracted_intents: list[str] = field(default_factory=list)
    intent_match: float = 0.0
    posts: list[dict] = field(default_factory=list)

    @classmethod
    def neutral(cls, reason: str, posts: Optional[list[dict]] = None) -> "IntentVerification":
        return cls(
            is_verified=False,
            confidence=0.0,
            analysis="Intent verification failed. Manual review required.",
            social_summary="Unable to analyze social activity",
            recommendation="REVIEW",
            warnings=["AI analysis failed", reason],
            posts=posts or [],
        )

    def to_dict(self) -> dict:
        return {
            "isVerified": self.is_verified,
            "confidence": self.confidence,
            "analysis": self.analysis,
            "socialSummary": self.social_summary,
            "warnings": self.warnings,
            "recommendation": self.recommendation,
            "extractedIntents": self.extracted_intents,
            "intentMatch": self.intent_match,
            "tweets": self.posts,
        }


@dataclass
class PreparedPlan:
    beneficiaries: list[Beneficiary]
    verification: IntentVerification
    reallocation: Optional[ReallocationResult] = None

    def to_dict(self) -> dict:
        return {
            "beneficiaries": [b.to_dict() for b in self.beneficiaries],
            "verification": self.verification.to_dict(),
            "reallocation": self.reallocation.to_dict() if self.reallocation else None,
        }


class IntentVerifier:
    def __init__(self, llm: LLMClient, social_source, reallocation: Optional[ReallocationEngine] = None):
        self.llm = llm
        self.social = social_source
        self.reallocation = reallocation

    async def _fetch_posts(self, handle: str) -> tuple[list[str], list[dict]]:
        try:
            posts = (await self.social.get_recent_posts(handle))[:DISTRIBUTION_LAWS.MAX_POSTS_FOR_ANALYSIS]
        except Exception as e:
            logger.warning(f"Social fetch failed for @{handle}: {e}")
            return ["Unable to fetch recent social posts."], []
        logger.info(f"Fetched {len(posts)} posts for @{handle}")
        return [f"[{p.date}] {p.content}" for p in posts], [p.to_dict() for p in posts[:5]]

    async def verify(
        self,
        manifesto: str,
        beneficiaries: list[Beneficiary],
        handle: str,
        lang: str = "en",
    ) -> IntentVerification:
        lines, raw_posts = await self._fetch_posts(handle)

        beneficiary_list = "\n".join(
            f"{b.name} ({b.percentage}%): {b.reason or 'No reason'}" for b in beneficiaries
        )
        user = (
            f"=== USER'S WILL (MANIFESTO) ===\n{manifesto}\n\n"
            f"=== BENEFICIARIES ===\n{beneficiary_list}\n\n"
            f"=== RECENT SOCIAL POSTS ===\n" + "\n".join(lines) + "\n\n"
            "Based on this information, verify if it's safe to execute this will NOW.\n"
            "Return ONLY valid JSON."
        )
        language = "Chinese (Simplified)" if lang == "zh" else "English"
        try:
            res = await self.llm.complete_json(VERIFY_SYSTEM_PROMPT.format(language=language), user)
            if not isinstance(res, dict):
                raise ValueError("verdict is not a JSON object")
        except Exception as e:
            logger.warning(f"Intent verification fell back to neutral verdict: {e}")
            return IntentVerification.neutral(str(e), raw_posts)

        recommendation = str(res.get("recommendation", "REVIEW")).upper()
        if recommendation not in RECOMMENDATIONS:
            recommendation = "REVIEW"
        intents = res.get("extractedIntents") or []
        warnings = res.get("warnings") or []

        verification = IntentVerification(
            is_verified=bool(res.get("isVerified", False)),
            confidence=_score(res.get("confidence"), 50.0),
            analysis=str(res.get("analysis") or "Analysis unavailable"),
            social_summary=str(res.get("socialSummary") or "No social summary"),
            recommendation=recommendation,
            warnings=[str(w) for w in warnings] if isinstance(warnings, list) else [],
            extracted_intents=[str(i) for i in intents] if isinstance(intents, list) else [],
            intent_match=_score(res.get("intentMatch"), 0.0),
            posts=raw_posts,
        )
        logger.info(
            f"Verification: {verification.recommendation} "
            f"(confidence {verification.confidence:.0f}%, match {verification.intent_match:.0f}%)"
        )
        return verification

    async def prepare_plan(
        self,
        manifesto: str,
        beneficiaries: list[Beneficiary],
        handle: str,
        lang: str = "en",
    ) -> PreparedPlan:
        """Verify, then reallocate only if the intent match is low."""
        verification = await self.verify(manifesto, beneficiaries, handle, lang)
        if self.reallocation is None or not self.reallocation.should_reallocate(verification.intent_match):
            return PreparedPlan(list(beneficiaries), verification)

        result = await self.reallocation.reallocate(
            beneficiaries, verification.extracted_intents, verification.intent_match, lang
        )
        return PreparedPlan(result.adjusted, verification, result)
