"""
Detection Service
Runs signal detection for a trial and materializes the resulting signals and tasks
"""

from typing import Any, Dict, List, Optional
import logging

from trial_signal_monitor.core.cross_source import analyze_data_consistency
from trial_signal_monitor.core.error_handling import TrialNotFoundError, run_with_fallback
from trial_signal_monitor.core.llm_detector import LLMSignalDetector
from trial_signal_monitor.core.materializer import SignalTaskMaterializer
from trial_signal_monitor.core.quality_checks import MonitoringOptions
from trial_signal_monitor.core.rule_evaluators import process_with_rules
from trial_signal_monitor.models.data_models import DetectionType, Trial, parse_domain_records
from trial_signal_monitor.storage.base import TrialRepository

logger = logging.getLogger(__name__)

RULE_BASED_METHOD = "Advanced Rule-based"
AI_METHOD = "AI-powered (OpenAI)"
RULE_BASED_REVIEW_METHOD = "Rule-based Analysis"
AI_REVIEW_METHOD = "AI-powered Analysis (OpenAI)"


class DetectionService:
    """
    Service for synchronous signal detection and cross-source data review
    """

    def __init__(
        self,
        repository: TrialRepository,
        detector: Optional[LLMSignalDetector] = None,
        materializer: Optional[SignalTaskMaterializer] = None
    ):
        self.repository = repository
        self.detector = detector
        self.materializer = materializer or SignalTaskMaterializer(repository)

    @property
    def ai_available(self) -> bool:
        return self.detector is not None and self.detector.available

    async def _get_trial(self, trial_id: int) -> Trial:
        trial = await self.repository.get_trial(trial_id)
        if trial is None:
            raise TrialNotFoundError(trial_id)
        return trial

    async def detect_signals(
        self,
        trial_id: int,
        data_source: str,
        data_points: List[Dict[str, Any]],
        detection_type: str = DetectionType.RULE_BASED.value,
        use_ai: bool = False
    ) -> Dict[str, Any]:
        """
        Detect signals in one batch of source records.

        Returns ``{success, detections, method, message}``. When the
        language-model detector fails the rule evaluators run instead and
        the method reports rule-based detection.
        """
        records = parse_domain_records(data_source, data_points)
        trial = await self._get_trial(trial_id)

        method = RULE_BASED_METHOD
        if use_ai and self.ai_available:
            result = await run_with_fallback(
                lambda: self.detector.detect(trial, data_source, records),
                lambda: process_with_rules(data_source, records, trial),
                label=f"OpenAI detection for {data_source}"
            )
            findings = result.value
            if not result.is_fallback:
                method = AI_METHOD
                detection_type = DetectionType.AI_POWERED.value
            else:
                logger.info(f"{result.fallback_source} unavailable, falling back to rule-based detection")
        else:
            logger.info(
                f"Processing {len(records)} data points with rule-based detection for source: {data_source}"
            )
            findings = process_with_rules(data_source, records, trial)

        detections = await self.materializer.materialize(findings, trial, data_source, detection_type)
        return {
            'success': True,
            'detections': [d.to_dict() for d in detections],
            'method': method,
            'message': f"Detected {len(detections)} signals using {method} analysis"
        }

    async def review_data_across_sources(
        self,
        trial_id: int,
        sources: Optional[List[str]] = None,
        options: Optional[MonitoringOptions] = None
    ) -> Dict[str, Any]:
        """
        Cross-source consistency review.

        Without explicit ``sources`` the trial's connected domain sources are
        reviewed.
        """
        trial = await self._get_trial(trial_id)
        options = options or MonitoringOptions()
        if not sources:
            sources = await self.materializer.get_data_sources_for_trial(trial.id)
        logger.info(f"Reviewing data across sources: {', '.join(sources)} for trial: {trial.protocol_id}")

        method = RULE_BASED_REVIEW_METHOD
        if self.ai_available:
            result = await run_with_fallback(
                lambda: self.detector.analyze_consistency(trial, sources),
                lambda: analyze_data_consistency(sources, trial),
                label="OpenAI data consistency analysis"
            )
            findings = result.value
            if not result.is_fallback:
                method = AI_REVIEW_METHOD
        else:
            findings = analyze_data_consistency(sources, trial)

        detections = await self.materializer.materialize_data_quality(findings, trial)
        return {
            'success': True,
            'detections': [d.to_dict() for d in detections],
            'method': method,
            'message': (
                f"Data Management Agent found {len(detections)} potential issues across "
                f"{len(sources)} data sources using {method}"
            ),
            'reviewedSources': list(sources),
            'options': options.to_dict()
        }

    async def list_signals(self, trial_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in await self.repository.list_signal_detections(trial_id)]

    async def list_tasks(self, trial_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in await self.repository.list_tasks(trial_id)]
