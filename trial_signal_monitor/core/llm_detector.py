"""
Language-Model Signal Detector
==============================

Alternate detector with the same contract as the rule evaluators:
``(trial, source, records) -> List[Finding]``. The prompt is built from the
trial context and the serialized records; the JSON reply is parsed strictly
into Findings.

Any transport or parse failure raises LLMServiceError. Falling back to the
rule evaluators is the caller's job.
"""

import json
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from openai import OpenAI

from trial_signal_monitor.core.error_handling import ClinicalDataError, LLMServiceError
from trial_signal_monitor.models.data_models import (
    DetectionSource,
    DomainRecord,
    Finding,
    Priority,
    Trial,
    normalize_detection_source,
)

logger = logging.getLogger(__name__)


@dataclass
class LLMConfig:
    """Configuration for the detector's OpenAI client"""
    api_key: Optional[str] = None
    model_name: str = "gpt-4o"
    temperature: float = 0.1
    max_tokens: int = 2000
    timeout_seconds: int = 60

    @classmethod
    def from_settings(cls, settings) -> "LLMConfig":
        return cls(
            api_key=settings.openai_api_key,
            model_name=settings.openai_model,
            temperature=settings.llm_temperature,
            timeout_seconds=settings.llm_timeout_seconds
        )


class PromptTemplates:
    """Signal detection prompt templates"""

    SYSTEM_DETECTION = (
        "You are a clinical trial data analyst specializing in identifying risk signals and data "
        "quality issues. Analyze the provided data and report every finding in the requested JSON format."
    )

    SYSTEM_CONSISTENCY = (
        "You are an expert in clinical trial data management with specialization in data reconciliation "
        "and cross-source verification. Analyze the provided data sources to identify potential "
        "inconsistencies, missing data, or discrepancies that need resolution."
    )

    TRIAL_CONTEXT = """Trial: {title} (Protocol ID: {protocol_id})
Phase: {phase}
Therapeutic Area: {therapeutic_area}
Indication: {indication}
Status: {status}
"""

    SOURCE_TASKS = {
        DetectionSource.SCREEN_FAILURE.value: """TASK: Analyze screen failure data to identify unusual patterns or issues.

Please analyze the following screen failure data from the clinical trial.
Look for patterns that might indicate site protocol issues, enrollment problems,
or potential data integrity concerns.

Screen Failure Data ({count} records):
{records}
""",
        DetectionSource.LAB_RESULTS.value: """TASK: Analyze lab results to detect values outside of expected ranges or patterns.

Please analyze the following laboratory results from the clinical trial.
Look for patterns of out-of-range values, unexpected trends, or site-specific issues.
Flag any findings that may require clinical investigation.

Lab Results Data ({count} records):
{records}
""",
        DetectionSource.ADVERSE_EVENTS.value: """TASK: Analyze adverse event data to identify safety signals.

Please analyze the following adverse event reports from the clinical trial.
Look for clusters of similar events, unexpected frequencies, or site-specific patterns
that might indicate a safety signal requiring investigation.

Adverse Event Data ({count} records):
{records}
""",
    }

    DEFAULT_TASK = """TASK: Analyze the following clinical trial data to identify any potential issues.

Please analyze this {source} data from the clinical trial.
Look for any patterns, outliers, or unexpected values that might indicate
issues requiring investigation.

Data ({count} records):
{records}
"""

    RESPONSE_FORMAT = """RESPONSE FORMAT:
Respond with a JSON object {"signals": [...]} listing the detected signals. Each signal must include:
1. "title" - A clear title for the signal
2. "observation" - Detailed description of what was observed
3. "priority" - Assigned priority (Critical, High, Medium, Low)
4. "siteId" - If site-specific, provide the site ID, otherwise null
5. "recommendation" - Suggested next steps or action items

Example response:
{"signals": [
  {
    "title": "Elevated Liver Enzyme Pattern",
    "observation": "5 patients at Site 123 showing ALT values >3x ULN within 7 days of dosing",
    "priority": "High",
    "siteId": "Site 123",
    "recommendation": "Investigate dosing procedures at Site 123 and review patient profiles"
  }
]}
"""

    CONSISTENCY = """## Clinical Trial Data Consistency Analysis Request

### Trial Information
- Protocol ID: {protocol_id}
- Title: {title}
- Phase: {phase}
- Indication: {indication}
- Status: {status}

### Data Sources to Compare
{sources}

### Analysis Requirements
1. Identify potential inconsistencies between these data sources
2. Detect missing data, conflicting values, timing differences and format inconsistencies
3. Evaluate the impact of each identified issue on data quality, naming its severity
   (Critical, High, Medium) in the impact text

Respond with a JSON object:
{{
  "potentialInconsistencies": [
    {{
      "issue": "Brief description of the potential inconsistency",
      "affectedSources": ["Sources involved in this inconsistency"],
      "impact": "Impact on data quality or trial outcomes",
      "reconciliationApproach": "Recommended approach to reconcile this issue"
    }}
  ],
  "overallAssessment": "Summary of consistency risks and recommendations"
}}
"""


def create_detection_prompt(trial: Trial, source: str, records: Sequence[Any]) -> str:
    """Prompt combining trial context, the source-specific task and the response contract"""
    serialized = json.dumps(
        [record.to_dict() if isinstance(record, DomainRecord) else record for record in records],
        indent=2,
        default=str
    )
    trial_context = PromptTemplates.TRIAL_CONTEXT.format(
        title=trial.title,
        protocol_id=trial.protocol_id,
        phase=trial.phase,
        therapeutic_area=trial.therapeutic_area,
        indication=trial.indication,
        status=trial.status
    )
    template = PromptTemplates.SOURCE_TASKS.get(normalize_detection_source(source), PromptTemplates.DEFAULT_TASK)
    task = template.format(source=source, count=len(records), records=serialized)
    return "\n".join([
        "CLINICAL TRIAL RISK SIGNAL DETECTION",
        "",
        trial_context,
        task,
        PromptTemplates.RESPONSE_FORMAT,
    ])


def create_consistency_prompt(trial: Trial, sources: Sequence[str]) -> str:
    return PromptTemplates.CONSISTENCY.format(
        protocol_id=trial.protocol_id,
        title=trial.title,
        phase=trial.phase,
        indication=trial.indication or "Not specified",
        status=trial.status,
        sources=", ".join(sources)
    )


def _decode(content: Optional[str]) -> Any:
    if not content or not content.strip():
        raise LLMServiceError("Empty response from language model", provider="openai")
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise LLMServiceError(f"Response is not valid JSON: {e}", provider="openai") from e


def parse_findings(content: Optional[str]) -> List[Finding]:
    """
    Strictly parse a detector reply into Findings.

    Accepts a JSON array, a single finding object, or an object wrapping
    either under ``signals`` or ``findings``. Every item must carry a
    non-empty title and observation and one of the four priorities.
    """
    payload = _decode(content)

    if isinstance(payload, dict):
        for key in ('signals', 'findings'):
            if key in payload:
                payload = payload[key]
                break

    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise LLMServiceError(
            f"Expected a list of findings, got {type(payload).__name__}", provider="openai"
        )

    findings = []
    for index, item in enumerate(payload):
        try:
            findings.append(Finding.from_dict(item))
        except ClinicalDataError as e:
            raise LLMServiceError(
                f"Finding {index} does not match the expected shape: {e}",
                provider="openai",
                details={'item': item}
            ) from e
    return findings


def _priority_from_impact(impact: str) -> Priority:
    if "Critical" in impact:
        return Priority.CRITICAL
    if "High" in impact:
        return Priority.HIGH
    return Priority.MEDIUM


def parse_consistency_findings(content: Optional[str]) -> List[Finding]:
    """Map ``potentialInconsistencies`` entries onto Findings"""
    payload = _decode(content)
    items = payload.get('potentialInconsistencies') if isinstance(payload, dict) else None
    if not isinstance(items, list):
        raise LLMServiceError("Response has no potentialInconsistencies list", provider="openai")

    findings = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise LLMServiceError(f"Inconsistency {index} is not an object", provider="openai")
        impact = str(item.get('impact') or '')
        try:
            findings.append(Finding(
                title=item.get('issue'),
                observation=impact,
                priority=_priority_from_impact(impact),
                site_id=None,
                recommendation=item.get('reconciliationApproach') or ""
            ))
        except ClinicalDataError as e:
            raise LLMServiceError(f"Inconsistency {index} is incomplete: {e}", provider="openai") from e
    return findings


class LLMSignalDetector:
    """
    OpenAI-backed detector.

    The blocking client call runs in the default executor, the way the rest
    of the service wraps synchronous SDK calls.
    """

    provider = "openai"

    def __init__(self, config: LLMConfig = None, client: Any = None):
        self.config = config or LLMConfig()
        if client is None and self.config.api_key:
            client = OpenAI(api_key=self.config.api_key, timeout=self.config.timeout_seconds)
        self.client = client

    @property
    def available(self) -> bool:
        return self.client is not None

    def _complete(self, system_prompt: str, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.config.model_name,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt}
            ],
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            response_format={"type": "json_object"}
        )
        return response.choices[0].message.content

    async def _acomplete(self, system_prompt: str, prompt: str) -> str:
        if not self.available:
            raise LLMServiceError("Language model client is not configured", provider=self.provider)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: self._complete(system_prompt, prompt))
        except Exception as e:
            logger.error(f"OpenAI API error: {e}")
            raise LLMServiceError(f"OpenAI request failed: {e}", provider=self.provider) from e

    async def detect(self, trial: Trial, source: str, records: Sequence[Any]) -> List[Finding]:
        logger.info(f"Processing {len(records)} data points with OpenAI for source: {source}")
        content = await self._acomplete(
            PromptTemplates.SYSTEM_DETECTION,
            create_detection_prompt(trial, source, records)
        )
        return parse_findings(content)

    async def analyze_consistency(self, trial: Trial, sources: Sequence[str]) -> List[Finding]:
        logger.info(f"Using OpenAI-powered cross-source analysis for {', '.join(sources)}")
        content = await self._acomplete(
            PromptTemplates.SYSTEM_CONSISTENCY,
            create_consistency_prompt(trial, sources)
        )
        return parse_consistency_findings(content)
