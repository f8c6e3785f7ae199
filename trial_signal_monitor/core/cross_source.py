"""
Cross-Source Consistency Evaluator
==================================

Catalogue of known inconsistency patterns between clinical data systems.
Each rule is gated on which data sources are connected to the trial; when
all of a rule's requirements are present its findings are emitted verbatim.
This is a lookup table, not a statistical comparison of record values.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from trial_signal_monitor.models.data_models import DataSourceType, Finding, Priority, Trial

logger = logging.getLogger(__name__)

EDC = DataSourceType.EDC.value
CTMS = DataSourceType.CTMS.value
IRT = DataSourceType.IRT.value
LIMS = DataSourceType.LIMS.value
LAB_RESULTS = DataSourceType.LAB_RESULTS.value
SUPPLY_CHAIN = DataSourceType.SUPPLY_CHAIN.value
SCREEN_FAILURE = DataSourceType.SCREEN_FAILURE.value
ENROLLMENT = DataSourceType.ENROLLMENT.value
ADVERSE_EVENTS = DataSourceType.ADVERSE_EVENTS.value
FINANCIAL = DataSourceType.FINANCIAL.value

LATE_PHASES = ("3", "III")


@dataclass(frozen=True)
class ConsistencyRule:
    """
    One catalogue entry.

    ``required`` is a sequence of alternatives: every group must have at least
    one member among the connected sources. ``applies`` is an optional extra
    gate on the trial itself.
    """
    name: str
    required: Tuple[FrozenSet[str], ...]
    findings: Tuple[Dict, ...]
    applies: Optional[Callable[[Trial], bool]] = field(default=None, compare=False)

    def matches(self, sources: Sequence[str], trial: Trial) -> bool:
        available = set(sources)
        if not all(group & available for group in self.required):
            return False
        return self.applies is None or bool(self.applies(trial))

    def build_findings(self) -> List[Finding]:
        return [Finding.from_dict(template) for template in self.findings]


def _needs(*groups) -> Tuple[FrozenSet[str], ...]:
    return tuple(frozenset([group]) if isinstance(group, str) else frozenset(group) for group in groups)


CONSISTENCY_RULES: Tuple[ConsistencyRule, ...] = (
    ConsistencyRule(
        name="edc_lab_reconciliation",
        required=_needs(EDC, (LIMS, LAB_RESULTS)),
        findings=(
            {
                'title': "Lab Results Discrepancy",
                'observation': "20% of lab results in LIMS do not match values entered in EDC",
                'priority': Priority.HIGH,
                'siteId': None,
                'recommendation': "Review data entry procedures and implement validation checks between EDC and LIMS systems",
            },
            {
                'title': "Missing Lab Results in EDC",
                'observation': "Approximately 12% of lab samples processed in LIMS lack corresponding data entry in EDC",
                'priority': Priority.MEDIUM,
                'siteId': None,
                'recommendation': "Create data reconciliation report to identify missing entries and implement process improvements",
            },
        ),
    ),
    ConsistencyRule(
        name="ctms_edc_visits",
        required=_needs(CTMS, EDC),
        findings=(
            {
                'title': "Visit Date Inconsistencies",
                'observation': "Visit dates in CTMS differ from those recorded in EDC for approximately 15% of visits",
                'priority': Priority.MEDIUM,
                'siteId': "Site 123",
                'recommendation': "Investigate data entry timing and synchronization between CTMS and EDC systems",
            },
            {
                'title': "Protocol Compliance Issues",
                'observation': "Visit window compliance in CTMS shows 18% out-of-window visits not flagged in EDC",
                'priority': Priority.HIGH,
                'siteId': None,
                'recommendation': "Implement automated cross-system validation for visit window compliance",
            },
        ),
    ),
    ConsistencyRule(
        name="irt_supply_chain",
        required=_needs(IRT, SUPPLY_CHAIN),
        findings=(
            {
                'title': "Drug Supply Disparity",
                'observation': "Inventory levels in IRT do not match Supply Chain records at 3 sites",
                'priority': Priority.CRITICAL,
                'siteId': None,
                'recommendation': "Immediate reconciliation of drug inventory records and verification of physical stock",
            },
            {
                'title': "Drug Accountability Gaps",
                'observation': "8 patients show drug dispensation in IRT but incomplete accountability logs in EDC",
                'priority': Priority.HIGH,
                'siteId': "Site 456",
                'recommendation': "Conduct site-specific training on drug accountability documentation",
            },
        ),
    ),
    ConsistencyRule(
        name="screening_enrollment",
        required=_needs(SCREEN_FAILURE, ENROLLMENT),
        findings=(
            {
                'title': "Enrollment Rate Anomaly",
                'observation': "Higher than expected screen failure ratio compared to enrollment rate at multiple sites",
                'priority': Priority.MEDIUM,
                'siteId': None,
                'recommendation': "Review enrollment criteria implementation and site training on inclusion/exclusion criteria",
            },
        ),
    ),
    ConsistencyRule(
        name="edc_safety",
        required=_needs(EDC, ADVERSE_EVENTS),
        findings=(
            {
                'title': "Unreported Adverse Events",
                'observation': "Safety database contains 15 adverse events not documented in EDC across 5 sites",
                'priority': Priority.CRITICAL,
                'siteId': None,
                'recommendation': "Implement immediate cross-system safety reconciliation process and conduct site retraining",
            },
        ),
    ),
    ConsistencyRule(
        name="edc_central_lab",
        required=_needs(EDC, LAB_RESULTS),
        findings=(
            {
                'title': "Central Lab Data Discrepancies",
                'observation': "Key efficacy parameters show >10% variance between site-reported and central lab values",
                'priority': Priority.HIGH,
                'siteId': None,
                'recommendation': "Review lab sample handling procedures and instrument calibration at affected sites",
            },
        ),
    ),
    ConsistencyRule(
        name="ctms_financial",
        required=_needs(CTMS, FINANCIAL),
        findings=(
            {
                'title': "Site Payment Discrepancies",
                'observation': "Completed procedures in CTMS not matching invoiced procedures in financial system",
                'priority': Priority.LOW,
                'siteId': "Site 789",
                'recommendation': "Reconcile visit records against payment system and update financial tracking procedures",
            },
        ),
    ),
    ConsistencyRule(
        name="primary_endpoint_integrity",
        required=_needs(EDC, LAB_RESULTS),
        applies=lambda trial: trial.phase in LATE_PHASES,
        findings=(
            {
                'title': "Primary Endpoint Data Integrity Risk",
                'observation': "Variance in primary endpoint measurements between EDC and external data sources exceeds protocol-specified threshold",
                'priority': Priority.CRITICAL,
                'siteId': None,
                'recommendation': "Convene data monitoring committee review and implement data quality remediation plan",
            },
        ),
    ),
)

_RULES_BY_NAME = {rule.name: rule for rule in CONSISTENCY_RULES}


def evaluate_rule(name: str, sources: Sequence[str], trial: Trial) -> List[Finding]:
    """Findings of a single catalogue rule; raises KeyError for unknown names"""
    rule = _RULES_BY_NAME[name]
    return rule.build_findings() if rule.matches(sources, trial) else []


def analyze_data_consistency(sources: Sequence[str], trial: Trial) -> List[Finding]:
    """Walk the catalogue in order and collect every matching rule's findings"""
    findings: List[Finding] = []
    for rule in CONSISTENCY_RULES:
        if rule.matches(sources, trial):
            findings.extend(rule.build_findings())
    logger.info(
        f"Cross-source review of {', '.join(sources) or 'no sources'} "
        f"for trial {trial.protocol_id}: {len(findings)} inconsistencies"
    )
    return findings


# =============================================================================
# Attribution helpers
# =============================================================================

_DOMAIN_KEYWORDS = (
    (("lab", "laboratory"), "LB"),
    (("adverse event", "safety"), "AE"),
    (("visit", "window"), "SV"),
    (("drug", "supply", "inventory"), "EX"),
    (("demographic", "enrollment"), "DM"),
    (("vital", "sign"), "VS"),
    (("concomitant", "medication"), "CM"),
)

_SOURCE_KEYWORDS = (
    ("edc", "EDC"),
    ("ctms", "CTMS"),
    ("lims", "Lab"),
    ("irt", "IRT"),
    ("supply chain", "SupplyChain"),
    ("safety database", "SafetyDB"),
)


def domain_from_inconsistency(finding: Finding) -> str:
    """SDTM-style domain code guessed from the finding title"""
    title = finding.title.lower()
    for keywords, domain in _DOMAIN_KEYWORDS:
        if any(keyword in title for keyword in keywords):
            return domain
    return "DATA_QUALITY"


def source_from_inconsistency(finding: Finding, sources: Sequence[str]) -> str:
    """Originating system guessed from the observation text"""
    observation = finding.observation.lower()
    for keyword, source in _SOURCE_KEYWORDS:
        if keyword in observation:
            return source
    return sources[0] if sources else "Multiple Sources"
