"""Medication Cross-Check Service.

This module flags known drug-drug interactions between medications that are
currently active for a patient but were prescribed by different hospitals.
The same drug active at two hospitals is reported as duplicate therapy.
Each hospital screens its own prescriptions when it writes them; what no
single hospital can see is the combination of its prescription with one
issued elsewhere. That cross-hospital combination is what this service checks.

Security Impact:
    - Operates only on prescriptions the caller was already permitted to see
    - Never writes anything; findings are advisory and returned to the caller

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Static interaction table keyed by generic drug name or drug class
    - Name normalization strips strength/dosage tokens and maps brand names
"""

import logging
import re
from dataclasses import dataclass
from itertools import combinations
from typing import Optional

from medlink.domain.enums import InteractionSeverity
from medlink.domain.models import ActiveMedication, DrugInteraction, MedicationCheckResult

logger = logging.getLogger(__name__)

CANDIDATE_HOSPITAL_LABEL = "candidate"


# ============================================================================
# Reference data
# ============================================================================

BRAND_TO_GENERIC: dict[str, str] = {
    "panadol": "paracetamol",
    "tylenol": "paracetamol",
    "acetaminophen": "paracetamol",
    "brufen": "ibuprofen",
    "advil": "ibuprofen",
    "nurofen": "ibuprofen",
    "voltaren": "diclofenac",
    "ponstan": "mefenamic acid",
    "arcoxia": "etoricoxib",
    "celebrex": "celecoxib",
    "cardiprin": "aspirin",
    "disprin": "aspirin",
    "plavix": "clopidogrel",
    "brilinta": "ticagrelor",
    "coumadin": "warfarin",
    "marevan": "warfarin",
    "xarelto": "rivaroxaban",
    "eliquis": "apixaban",
    "pradaxa": "dabigatran",
    "prozac": "fluoxetine",
    "zoloft": "sertraline",
    "lexapro": "escitalopram",
    "cipramil": "citalopram",
    "nardil": "phenelzine",
    "zyvox": "linezolid",
    "lipitor": "atorvastatin",
    "zocor": "simvastatin",
    "crestor": "rosuvastatin",
    "klacid": "clarithromycin",
    "zithromax": "azithromycin",
    "coversyl": "perindopril",
    "renitec": "enalapril",
    "aldactone": "spironolactone",
    "isoket": "isosorbide dinitrate",
    "imdur": "isosorbide mononitrate",
    "viagra": "sildenafil",
    "cialis": "tadalafil",
    "glucophage": "metformin",
    "diamicron": "gliclazide",
    "lanoxin": "digoxin",
    "cordarone": "amiodarone",
    "ultram": "tramadol",
    "tegretol": "carbamazepine",
}

DRUG_CLASSES: dict[str, frozenset[str]] = {
    "nsaid": frozenset({
        "ibuprofen", "naproxen", "diclofenac", "mefenamic acid", "etoricoxib",
        "celecoxib", "indomethacin", "ketoprofen", "aspirin",
    }),
    "anticoagulant": frozenset({
        "warfarin", "rivaroxaban", "apixaban", "dabigatran", "heparin", "enoxaparin",
    }),
    "antiplatelet": frozenset({"aspirin", "clopidogrel", "ticagrelor", "prasugrel"}),
    "ssri": frozenset({"fluoxetine", "sertraline", "escitalopram", "citalopram", "paroxetine"}),
    "maoi": frozenset({"phenelzine", "tranylcypromine", "selegiline", "linezolid"}),
    "statin": frozenset({"atorvastatin", "simvastatin", "lovastatin", "rosuvastatin"}),
    "macrolide": frozenset({"clarithromycin", "erythromycin", "azithromycin"}),
    "ace_inhibitor": frozenset({"perindopril", "enalapril", "lisinopril", "captopril", "ramipril"}),
    "potassium_sparing_diuretic": frozenset({"spironolactone", "eplerenone", "amiloride"}),
    "nitrate": frozenset({"isosorbide dinitrate", "isosorbide mononitrate", "glyceryl trinitrate", "nitroglycerin"}),
    "pde5_inhibitor": frozenset({"sildenafil", "tadalafil", "vardenafil"}),
}


@dataclass(frozen=True)
class InteractionRule:
    """One row of the interaction table.

    ``left`` and ``right`` are either generic drug names or ``class:<name>``
    references into DRUG_CLASSES.
    """
    left: str
    right: str
    severity: InteractionSeverity
    description: str


INTERACTION_RULES: tuple[InteractionRule, ...] = (
    InteractionRule("ibuprofen", "aspirin", InteractionSeverity.HIGH,
                    "Increased risk of gastrointestinal bleeding; ibuprofen may reduce the "
                    "cardioprotective effect of aspirin."),
    InteractionRule("aspirin", "clopidogrel", InteractionSeverity.MODERATE,
                    "Additive antiplatelet effect increases bleeding risk."),
    InteractionRule("class:anticoagulant", "class:nsaid", InteractionSeverity.HIGH,
                    "NSAIDs increase the bleeding risk of anticoagulants."),
    InteractionRule("class:anticoagulant", "class:antiplatelet", InteractionSeverity.HIGH,
                    "Combined anticoagulant and antiplatelet therapy markedly increases bleeding risk."),
    InteractionRule("class:anticoagulant", "class:anticoagulant", InteractionSeverity.CRITICAL,
                    "Duplicate anticoagulation; risk of major haemorrhage."),
    InteractionRule("class:nsaid", "class:nsaid", InteractionSeverity.MODERATE,
                    "Duplicate NSAID therapy increases gastrointestinal and renal toxicity."),
    InteractionRule("class:ssri", "class:maoi", InteractionSeverity.CRITICAL,
                    "Risk of serotonin syndrome; combination is contraindicated."),
    InteractionRule("class:ssri", "class:nsaid", InteractionSeverity.MODERATE,
                    "SSRIs combined with NSAIDs increase gastrointestinal bleeding risk."),
    InteractionRule("tramadol", "class:ssri", InteractionSeverity.HIGH,
                    "Risk of serotonin syndrome and lowered seizure threshold."),
    InteractionRule("class:statin", "class:macrolide", InteractionSeverity.HIGH,
                    "Macrolides inhibit statin metabolism; risk of myopathy and rhabdomyolysis."),
    InteractionRule("class:ace_inhibitor", "class:potassium_sparing_diuretic", InteractionSeverity.HIGH,
                    "Risk of hyperkalaemia."),
    InteractionRule("class:nitrate", "class:pde5_inhibitor", InteractionSeverity.CRITICAL,
                    "Severe, potentially fatal hypotension; combination is contraindicated."),
    InteractionRule("warfarin", "amiodarone", InteractionSeverity.HIGH,
                    "Amiodarone potentiates warfarin; INR may rise sharply."),
    InteractionRule("digoxin", "amiodarone", InteractionSeverity.HIGH,
                    "Amiodarone raises digoxin levels; risk of toxicity."),
    InteractionRule("metformin", "class:ace_inhibitor", InteractionSeverity.LOW,
                    "May enhance the hypoglycaemic effect of metformin; monitor glucose."),
    InteractionRule("carbamazepine", "class:macrolide", InteractionSeverity.HIGH,
                    "Macrolides raise carbamazepine levels; risk of toxicity."),
)

DUPLICATE_THERAPY_RULE = InteractionRule(
    "*", "*", InteractionSeverity.MODERATE,
    "Same drug prescribed by more than one hospital; risk of double dosing.",
)


# ============================================================================
# Name normalization
# ============================================================================

_STRENGTH_TOKEN = re.compile(
    r"^\d+([.,]\d+)?(mg|mcg|µg|g|ml|iu|units?|%)?$|^(mg|mcg|µg|g|ml|iu|units?|%)$",
    re.IGNORECASE,
)
_FORM_TOKENS = frozenset({
    "tab", "tabs", "tablet", "tablets", "cap", "caps", "capsule", "capsules",
    "syrup", "injection", "inj", "cream", "er", "sr", "xr", "mr", "od",
})


def normalize_medication_name(name: str) -> str:
    """Normalize a prescribed medication name to a generic drug name.

    Lower-cases, drops strength/dosage and dosage-form tokens, and maps brand
    names to generics. For example ``"Aspirin 100mg"`` becomes ``"aspirin"``
    and ``"Plavix 75 mg tablet"`` becomes ``"clopidogrel"``.
    """
    tokens = re.split(r"[\s/()\-]+", name.lower().strip())
    kept = [
        t for t in tokens
        if t and not _STRENGTH_TOKEN.match(t) and t not in _FORM_TOKENS
    ]
    normalized = " ".join(kept)
    if normalized in BRAND_TO_GENERIC:
        return BRAND_TO_GENERIC[normalized]
    # A brand name followed by a qualifier ("Panadol Actifast")
    if kept and kept[0] in BRAND_TO_GENERIC:
        return BRAND_TO_GENERIC[kept[0]]
    return normalized


def _matches(term: str, drug: str) -> bool:
    if term.startswith("class:"):
        return drug in DRUG_CLASSES.get(term[len("class:"):], frozenset())
    return term == drug


def find_interaction(drug_a: str, drug_b: str) -> Optional[InteractionRule]:
    """Return the most severe rule matching two normalized drug names, if any.

    The same generic from two sources is duplicate therapy: a class rule that
    covers the drug (e.g. duplicate anticoagulation) takes precedence, and any
    other drug falls back to DUPLICATE_THERAPY_RULE.
    """
    if not drug_a or not drug_b:
        return None
    best: Optional[InteractionRule] = None
    for rule in INTERACTION_RULES:
        forward = _matches(rule.left, drug_a) and _matches(rule.right, drug_b)
        backward = _matches(rule.left, drug_b) and _matches(rule.right, drug_a)
        if forward or backward:
            if best is None or rule.severity.rank > best.severity.rank:
                best = rule
    if best is None and drug_a == drug_b:
        return DUPLICATE_THERAPY_RULE
    return best


# ============================================================================
# Cross-check
# ============================================================================

class MedicationCrossCheck:
    """Flags interactions between active medications from different hospitals.

    Example Usage:
        ```python
        checker = MedicationCrossCheck()
        result = checker.check("880101-14-5678", active_medications)
        for finding in result.interactions:
            print(finding.severity, finding.medication_a, finding.medication_b)
        ```
    """

    def check(
        self,
        ic_number: str,
        active_medications: list[ActiveMedication],
        candidate_medication: Optional[str] = None,
        hospitals_consulted: int = 0,
        is_complete: bool = True,
    ) -> MedicationCheckResult:
        """Run the cross-check.

        Parameters:
            ic_number: Patient the medications belong to
            active_medications: Active prescriptions tagged with their hospital
            candidate_medication: Drug about to be prescribed; screened against
                every active medication regardless of issuing hospital
            hospitals_consulted: Hospitals whose prescriptions were gathered
            is_complete: False when some hospital could not be reached

        Returns:
            MedicationCheckResult: Findings sorted by severity, most severe first
        """
        findings: dict[frozenset[str], DrugInteraction] = {}

        for first, second in combinations(active_medications, 2):
            if first.hospital_id == second.hospital_id:
                continue
            self._consider(findings, first.medication_name, first.hospital_id,
                           second.medication_name, second.hospital_id)

        if candidate_medication and candidate_medication.strip():
            for med in active_medications:
                self._consider(findings, candidate_medication.strip(), CANDIDATE_HOSPITAL_LABEL,
                               med.medication_name, med.hospital_id)

        interactions = sorted(findings.values(), key=lambda f: f.severity.rank, reverse=True)
        if interactions:
            logger.info(
                f"Medication cross-check found {len(interactions)} interaction(s) "
                f"across {hospitals_consulted} hospital(s)"
            )

        return MedicationCheckResult(
            ic_number=ic_number,
            active_medications=active_medications,
            interactions=interactions,
            hospitals_consulted=hospitals_consulted,
            is_complete=is_complete,
        )

    @staticmethod
    def _consider(
        findings: dict[frozenset[str], DrugInteraction],
        name_a: str,
        hospital_a: str,
        name_b: str,
        hospital_b: str,
    ) -> None:
        drug_a = normalize_medication_name(name_a)
        drug_b = normalize_medication_name(name_b)
        rule = find_interaction(drug_a, drug_b)
        if rule is None:
            return

        key = frozenset({drug_a, drug_b})
        existing = findings.get(key)
        if existing is not None and existing.severity.rank >= rule.severity.rank:
            return
        findings[key] = DrugInteraction(
            medication_a=name_a,
            medication_b=name_b,
            severity=rule.severity,
            description=rule.description,
            hospital_a=hospital_a,
            hospital_b=hospital_b,
        )
