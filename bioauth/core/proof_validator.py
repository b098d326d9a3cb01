"""
Proof classification (deterministic)
------------------------------------
Hard failures reject outright; soft failures ask for manual review; anything
else is accepted. No I/O: same ProofResult and thresholds, same verdict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from bioauth.settings import settings
from bioauth.store.models import ProofResult

ACCEPT = "accept"
REJECT = "reject"
MANUAL_REVIEW = "manual_review"

# Hard-fail reason codes
LIVENESS_FAILED = "LivenessFailed"
SELFIE_INJECTION = "SelfieInjectionDetected"
DOCUMENT_INJECTION = "DocumentInjectionDetected"
PRESENTATION_ATTACK = "PresentationAttack"
DOCUMENT_EXPIRED = "DocumentExpired"
PROOF_MISSING = "ProofMissing"

# Soft-fail reason codes
LOW_MATCH_SCORE = "LowMatchScore"
LOW_CONFIDENCE_SCORE = "LowConfidenceScore"
BARCODE_CHECK_FAILED = "BarcodeCheckFailed"
MRZ_OCR_MISMATCH = "MrzOcrMismatch"
PAD_MANUAL_REVIEW = "PadManualReview"


@dataclass(frozen=True)
class Verdict:
    decision: str
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def reasons(self) -> List[str]:
        """Reasons that justify the decision: errors on reject, warnings on review."""
        if self.decision == REJECT:
            return list(self.errors)
        if self.decision == MANUAL_REVIEW:
            return list(self.warnings)
        return []

    @property
    def accepted(self) -> bool:
        return self.decision == ACCEPT


def classify_proof(
    proof: Optional[ProofResult],
    *,
    match_threshold: Optional[float] = None,
    confidence_threshold: Optional[float] = None,
) -> Verdict:
    if proof is None:
        return Verdict(decision=REJECT, errors=[PROOF_MISSING])

    match_min = float(settings.MATCH_SCORE_THRESHOLD if match_threshold is None else match_threshold)
    confidence_min = float(settings.CONFIDENCE_SCORE_THRESHOLD if confidence_threshold is None else confidence_threshold)

    errors: List[str] = []
    warnings: List[str] = []

    # Hard fails. livenessPassed=None means "not reported", not "failed".
    if proof.livenessPassed is False:
        errors.append(LIVENESS_FAILED)
    if proof.selfieInjection:
        errors.append(SELFIE_INJECTION)
    if proof.documentInjection:
        errors.append(DOCUMENT_INJECTION)
    if proof.presentationAttack:
        errors.append(PRESENTATION_ATTACK)
    if proof.documentExpired:
        errors.append(DOCUMENT_EXPIRED)

    # Soft fails
    if proof.matchScore is not None and proof.matchScore < match_min:
        warnings.append(LOW_MATCH_SCORE)
    if proof.confidenceScore is not None and proof.confidenceScore < confidence_min:
        warnings.append(LOW_CONFIDENCE_SCORE)
    if proof.barcodeCheckFailed:
        warnings.append(BARCODE_CHECK_FAILED)
    if proof.mrzOcrMismatch:
        warnings.append(MRZ_OCR_MISMATCH)
    if proof.padManualReview:
        warnings.append(PAD_MANUAL_REVIEW)

    if errors:
        decision = REJECT
    elif warnings:
        decision = MANUAL_REVIEW
    else:
        decision = ACCEPT
    return Verdict(decision=decision, errors=errors, warnings=warnings)
