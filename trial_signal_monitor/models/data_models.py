"""
Data Models for the Trial Signal Monitor
Defines the core data structures for signal detection and task generation
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Type
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from trial_signal_monitor.core.error_handling import DataValidationError


class Priority(str, Enum):
    """Signal and task priority levels"""
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        """Case-insensitive lookup; raises DataValidationError on unknown values"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        raise DataValidationError(f"Invalid priority: {value!r}", field="priority", value=value)

    @property
    def is_high_severity(self) -> bool:
        return self in (Priority.CRITICAL, Priority.HIGH)


class DataSourceType(str, Enum):
    """Clinical data source systems"""
    EDC = "EDC"
    CTMS = "CTMS"
    IRT = "IRT"
    LIMS = "LIMS"
    SUPPLY_CHAIN = "Supply Chain"
    DATA_LAKE = "Data Lake"
    SCREEN_FAILURE = "Screen Failure"
    LAB_RESULTS = "Lab Results"
    ADVERSE_EVENTS = "Adverse Events"
    PROTOCOL_DEVIATIONS = "Protocol Deviations"
    ENROLLMENT = "Enrollment"
    DATA_QUALITY = "Data Quality"
    EXTERNAL_LAB = "External Lab"
    FINANCIAL = "Financial"
    SAFETY_DB = "Safety Database"
    DATA_MANAGEMENT = "Data Management"


class DetectionSource(str, Enum):
    """Source keys accepted by the synchronous detection request"""
    SCREEN_FAILURE = "screenFailure"
    LAB_RESULTS = "labResults"
    ADVERSE_EVENTS = "adverseEvents"
    PROTOCOL_DEVIATIONS = "protocolDeviations"
    ENROLLMENT = "enrollment"
    DATA_QUALITY = "dataQuality"
    SITE_METRICS = "siteMetrics"


_DISPLAY_TO_DETECTION_SOURCE = {
    DataSourceType.SCREEN_FAILURE.value: DetectionSource.SCREEN_FAILURE.value,
    DataSourceType.LAB_RESULTS.value: DetectionSource.LAB_RESULTS.value,
    DataSourceType.ADVERSE_EVENTS.value: DetectionSource.ADVERSE_EVENTS.value,
    DataSourceType.PROTOCOL_DEVIATIONS.value: DetectionSource.PROTOCOL_DEVIATIONS.value,
    DataSourceType.ENROLLMENT.value: DetectionSource.ENROLLMENT.value,
    DataSourceType.DATA_QUALITY.value: DetectionSource.DATA_QUALITY.value,
}


def normalize_detection_source(source: str) -> str:
    """Map a display name such as 'Lab Results' onto its detection key"""
    if source in _DISPLAY_TO_DETECTION_SOURCE:
        return _DISPLAY_TO_DETECTION_SOURCE[source]
    return source


class DetectionType(str, Enum):
    """How a signal was detected"""
    RULE_BASED = "Rule-based"
    AI_POWERED = "AI-powered"
    MANUAL = "Manual"
    AUTOMATED = "Automated"


class TaskStatus(str, Enum):
    """Task workflow status"""
    NOT_STARTED = "not_started"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    COMPLETED = "completed"


class SignalStatus(str, Enum):
    """Signal detection status at creation"""
    INITIATED = "initiated"
    DETECTED = "detected"
    OPEN = "open"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# =============================================================================
# Domain records (validated at the ingestion boundary)
# =============================================================================

class DomainRecord(BaseModel):
    """One input data point; unknown fields are kept as extras"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    site_id: Optional[str] = Field(default=None, alias="siteId")
    subject_id: Optional[str] = Field(default=None, alias="subjectId")

    @field_validator("site_id", "subject_id", mode="before")
    @classmethod
    def _coerce_identifier(cls, value):
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        raise ValueError("identifier must be a string or number")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ScreenFailureRecord(DomainRecord):
    screening_date: Optional[str] = Field(default=None, alias="screeningDate")
    reason: Optional[str] = None


class LabResultRecord(DomainRecord):
    parameter: Optional[str] = None
    value: Optional[float] = None
    upper_limit: Optional[float] = Field(default=None, alias="upperLimit")
    lower_limit: Optional[float] = Field(default=None, alias="lowerLimit")

    @property
    def is_abnormal(self) -> bool:
        if self.value is None:
            return False
        if self.upper_limit is not None and self.value > self.upper_limit:
            return True
        if self.lower_limit is not None and self.value < self.lower_limit:
            return True
        return False


class AdverseEventRecord(DomainRecord):
    type: Optional[str] = None
    severity: Optional[str] = None


class ProtocolDeviationRecord(DomainRecord):
    deviation_type: Optional[str] = Field(default=None, alias="deviationType")


class EnrollmentRecord(DomainRecord):
    enrollment_date: Optional[str] = Field(default=None, alias="enrollmentDate")


RECORD_MODELS: Dict[str, Type[DomainRecord]] = {
    DetectionSource.SCREEN_FAILURE.value: ScreenFailureRecord,
    DetectionSource.LAB_RESULTS.value: LabResultRecord,
    DetectionSource.ADVERSE_EVENTS.value: AdverseEventRecord,
    DetectionSource.PROTOCOL_DEVIATIONS.value: ProtocolDeviationRecord,
    DetectionSource.ENROLLMENT.value: EnrollmentRecord,
}


def parse_domain_records(source: str, rows: List[Dict[str, Any]]) -> List[DomainRecord]:
    """Validate raw rows into the record model for ``source``"""
    model = RECORD_MODELS.get(normalize_detection_source(source), DomainRecord)
    records = []
    for index, row in enumerate(rows):
        try:
            records.append(model.model_validate(row))
        except ValidationError as e:
            raise DataValidationError(
                f"Invalid {source} record at index {index}",
                field=f"dataPoints[{index}]",
                value=row,
                details={'errors': e.errors(include_url=False)}
            ) from e
    return records


# =============================================================================
# Engine entities
# =============================================================================

@dataclass
class Trial:
    """Trial context handed to evaluators"""
    id: int
    protocol_id: str
    title: str
    phase: str = ""
    status: str = "active"
    therapeutic_area: Optional[str] = None
    indication: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'protocolId': self.protocol_id,
            'title': self.title,
            'phase': self.phase,
            'status': self.status,
            'therapeuticArea': self.therapeutic_area,
            'indication': self.indication
        }


@dataclass
class Site:
    """Investigational site"""
    id: int
    site_id: str
    name: str = ""
    trial_id: Optional[int] = None

    def to_dict(self) -> Dict:
        return {'id': self.id, 'siteId': self.site_id, 'name': self.name, 'trialId': self.trial_id}


@dataclass
class DomainSource:
    """A data source connected to a trial domain"""
    id: int
    trial_id: int
    domain: str
    source: str

    def to_dict(self) -> Dict:
        return {'id': self.id, 'trialId': self.trial_id, 'domain': self.domain, 'source': self.source}


@dataclass
class Finding:
    """
    Candidate issue produced by an evaluator, not yet persisted.

    ``priority`` accepts any casing of the four priority names and is stored
    as a :class:`Priority`.
    """
    title: str
    observation: str
    priority: Priority
    site_id: Optional[str] = None
    recommendation: str = ""
    domain: Optional[str] = None
    record_id: Optional[str] = None
    source_data: Optional[Any] = None

    def __post_init__(self):
        if not isinstance(self.title, str) or not self.title.strip():
            raise DataValidationError("Finding title must be a non-empty string", field="title", value=self.title)
        if not isinstance(self.observation, str) or not self.observation.strip():
            raise DataValidationError(
                "Finding observation must be a non-empty string", field="observation", value=self.observation
            )
        self.priority = Priority.parse(self.priority)
        if self.site_id is not None and not isinstance(self.site_id, str):
            self.site_id = str(self.site_id)
        if self.recommendation is None:
            self.recommendation = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        if not isinstance(data, dict):
            raise DataValidationError("Finding must be an object", value=data)
        return cls(
            title=data.get('title'),
            observation=data.get('observation') or data.get('description'),
            priority=data.get('priority'),
            site_id=data.get('siteId') or None,
            recommendation=data.get('recommendation') or data.get('recommendedAction') or "",
            domain=data.get('domain'),
            record_id=data.get('recordId'),
            source_data=data.get('sourceData')
        )

    def to_dict(self) -> Dict:
        result = {
            'title': self.title,
            'observation': self.observation,
            'priority': self.priority.value,
            'siteId': self.site_id,
            'recommendation': self.recommendation
        }
        if self.domain:
            result['domain'] = self.domain
        if self.record_id:
            result['recordId'] = self.record_id
        return result


@dataclass
class SignalDetection:
    """Persisted detection record"""
    id: int
    detection_id: str
    title: str
    trial_id: int
    observation: str
    priority: str
    signal_type: Optional[str] = None
    detection_type: str = DetectionType.RULE_BASED.value
    site_id: Optional[int] = None
    data_reference: Optional[str] = None
    status: str = SignalStatus.INITIATED.value
    detection_date: datetime = field(default_factory=datetime.now)
    created_by: Optional[str] = None
    notified_persons: List[str] = field(default_factory=list)
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    recommendation: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'detectionId': self.detection_id,
            'title': self.title,
            'signalType': self.signal_type,
            'detectionType': _enum_value(self.detection_type),
            'trialId': self.trial_id,
            'siteId': self.site_id,
            'dataReference': self.data_reference,
            'observation': self.observation,
            'priority': _enum_value(self.priority),
            'status': _enum_value(self.status),
            'detectionDate': _iso(self.detection_date),
            'createdBy': self.created_by,
            'notifiedPersons': list(self.notified_persons),
            'assignedTo': self.assigned_to,
            'dueDate': _iso(self.due_date),
            'recommendation': self.recommendation
        }


@dataclass
class Task:
    """Persisted actionable work item"""
    id: int
    task_id: str
    title: str
    trial_id: int
    priority: str
    description: str = ""
    status: str = TaskStatus.NOT_STARTED.value
    site_id: Optional[int] = None
    detection_id: Optional[int] = None
    created_by: Optional[str] = None
    assigned_to: Optional[str] = None
    due_date: Optional[datetime] = None
    domain: Optional[str] = None
    record_id: Optional[str] = None
    source: Optional[str] = None
    source_id: Optional[str] = None
    source_type: Optional[str] = None
    data_context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'taskId': self.task_id,
            'title': self.title,
            'description': self.description,
            'priority': _enum_value(self.priority),
            'status': _enum_value(self.status),
            'trialId': self.trial_id,
            'siteId': self.site_id,
            'detectionId': self.detection_id,
            'createdBy': self.created_by,
            'assignedTo': self.assigned_to,
            'dueDate': _iso(self.due_date),
            'domain': self.domain,
            'recordId': self.record_id,
            'source': self.source,
            'sourceId': self.source_id,
            'sourceType': self.source_type,
            'dataContext': dict(self.data_context),
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
            'completedAt': _iso(self.completed_at)
        }
