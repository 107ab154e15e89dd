import datetime
from pydantic import BaseModel, Field, field_validator, ConfigDict
from typing import List, Optional, Union, Literal, Dict, Any

from . import config # Import config for defaults

TaskStatus = Literal["pending", "in-progress", "review", "done", "deferred", "cancelled"]
TaskPriority = Literal["high", "medium", "low"]
GenerationRole = Literal["main", "research"]

ACTIVE_STATUSES = ("pending", "in-progress", "review", "deferred")
FINISHED_STATUSES = ("done", "completed")


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _coerce_int_list(v):
    if v is None: return []
    if not isinstance(v, list): raise ValueError("Dependencies must be a list")
    return [int(item) for item in v]

# --- Task & Subtask Models ---
class Subtask(BaseModel):
    model_config = ConfigDict(extra='allow') # Allow extra fields like parentTaskId

    id: int
    title: str = Field(..., description="Brief, descriptive title of the subtask.")
    description: Optional[str] = Field(None, description="Concise description of what the subtask involves.")
    details: Optional[str] = Field(None, description="In-depth implementation instructions for the subtask.")
    acceptanceCriteria: Optional[str] = Field(None, description="Criteria to verify subtask completion.")
    status: TaskStatus = Field("pending", description="Current state of the subtask.")
    # Dependencies are ids of earlier *sibling* subtasks
    dependencies: List[int] = Field([], description="IDs of sibling subtasks this depends on.")

    @field_validator('dependencies', mode='before')
    @classmethod
    def ensure_dependencies_list(cls, v):
        return _coerce_int_list(v)

class Task(BaseModel):
    model_config = ConfigDict(extra='allow') # Free-form detail keys survive a round trip

    id: int = Field(..., description="Task number, unique within its scope.")
    title: str = Field(..., description="Brief, descriptive title of the task.")
    description: Optional[str] = Field(None, description="Concise description of what the task involves.")
    details: Optional[str] = Field(None, description="In-depth implementation instructions.")
    status: TaskStatus = Field("pending", description="Current state of the task.")
    dependencies: List[int] = Field([], description="Numbers of tasks this depends on.")
    priority: TaskPriority = Field(config.DEFAULT_PRIORITY, description="Importance level of the task.")
    testStrategy: Optional[str] = Field(None, description="Verification approach for the task.")
    subtasks: List[Subtask] = Field([], description="List of smaller, specific subtasks.")
    updatedAt: Optional[str] = Field(None, description="ISO timestamp of the last modification.")

    @field_validator('dependencies', mode='before')
    @classmethod
    def ensure_dependencies_list(cls, v):
        return _coerce_int_list(v)

class TaskFileMetadata(BaseModel):
    projectName: str = Field(default=config.PROJECT_NAME)
    projectVersion: str = Field(default=config.PROJECT_VERSION)
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    description: Optional[str] = None

class TasksData(BaseModel):
    """One scope (tag) of the tasks file."""
    tasks: List[Task] = []
    metadata: TaskFileMetadata = Field(default_factory=TaskFileMetadata)

class HistoryEntry(BaseModel):
    taskId: Union[int, str]
    action: str
    changeSummary: str
    previousValue: Optional[Dict[str, Any]] = None
    newValue: Optional[Dict[str, Any]] = None
    timestamp: str = Field(default_factory=utc_now_iso)

# --- AI Draft Models (schemas handed to the Generation Adapter) ---
class TaskDraft(BaseModel):
    """A task as the AI proposes it; ids are batch-local until remapped."""
    model_config = ConfigDict(extra='ignore')

    id: int
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    details: Optional[str] = ""
    testStrategy: Optional[str] = ""
    priority: Optional[TaskPriority] = None
    dependencies: List[int] = []
    status: Optional[str] = None

    @field_validator('priority', mode='before')
    @classmethod
    def normalize_priority(cls, v):
        if isinstance(v, str) and v.strip().lower() in ("high", "medium", "low"):
            return v.strip().lower()
        return None

    @field_validator('dependencies', mode='before')
    @classmethod
    def ensure_dependencies_list(cls, v):
        if v is None: return []
        if not isinstance(v, list): raise ValueError("Dependencies must be a list")
        # Non-numeric references cannot be resolved and are dropped here
        return [int(item) for item in v if isinstance(item, int) or (isinstance(item, str) and item.strip().isdigit())]

class PrdMetadata(BaseModel):
    projectName: Optional[str] = None
    totalTasks: Optional[int] = None
    sourceFile: Optional[str] = None
    generatedAt: Optional[str] = None

class PrdResponse(BaseModel):
    tasks: List[TaskDraft]
    metadata: Optional[PrdMetadata] = None

class NewTaskDraft(BaseModel):
    """A single task proposed from a free-text description; its number is assigned on save."""
    model_config = ConfigDict(extra='ignore')

    title: str = Field(..., min_length=1, description="Clear, concise title for the task.")
    description: str = Field(..., min_length=1, description="One or two sentence description of the task.")
    details: Optional[str] = Field("", description="In-depth implementation details.")
    testStrategy: Optional[str] = Field("", description="How to verify the task is done.")
    dependencies: List[int] = Field([], description="Numbers of existing tasks this depends on.")

    @field_validator('dependencies', mode='before')
    
    def ensure_dependencies_list(cls, v):
        if v is None: return []
        if not isinstance(v, list): raise ValueError("Dependencies must be a list")
        return [int(item) for item in v if isinstance(item, int) or (isinstance(item, str) and item.strip().isdigit())]

class SubtaskDraft(BaseModel):
    model_config = ConfigDict(extra='ignore')

    id: Optional[int] = None
    title: str = Field(..., min_length=1)
    description: Optional[str] = ""
    details: Optional[str] = ""
    acceptanceCriteria: Optional[str] = None
    dependencies: List[int] = []

    @field_validator('dependencies', mode='before')
    @classmethod
    def ensure_dependencies_list(cls, v):
        if v is None: return []
        if not isinstance(v, list): raise ValueError("Dependencies must be a list")
        return [int(item) for item in v if isinstance(item, int) or (isinstance(item, str) and item.strip().isdigit())]

class SubtaskBatch(BaseModel):
    subtasks: List[SubtaskDraft]

# --- Scope Adjustment Models ---
ScopeDirection = Literal["up", "down"]
ScopeStrength = Literal["light", "regular", "heavy"]

class ScopeAdjustment(BaseModel):
    """A task rewritten with more or less scope."""
    model_config = ConfigDict(extra='ignore')

    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    details: str = Field(..., description="Implementation details for the adjusted scope.")
    testStrategy: Optional[str] = Field("", description="Test strategy for the adjusted scope.")
    scopeChanges: List[str] = Field([], description="Specific changes made to the scope.")
    removedRequirements: List[str] = Field([], description="Requirements dropped or simplified (scope down only).")
    complexityChange: int = Field(..., ge=1, le=5, description="Estimated change in complexity, 1 to 5.")
    reasoning: str = Field("", description="Why these scope changes were made.")

    @field_validator('complexityChange', mode='before')
    
    def clamp_change(cls, v):
        return max(1, min(5, int(round(float(v)))))

# --- Complexity Analysis Models ---
class ComplexityAnalysisItem(BaseModel):
    model_config = ConfigDict(extra='ignore')

    taskId: int
    taskTitle: str
    complexityScore: int = Field(..., ge=1, le=10, description="Complexity score from 1 to 10.")
    recommendedSubtasks: int = Field(..., ge=1, description="Recommended number of subtasks.")
    expansionPrompt: str = Field(..., description="AI-generated prompt for expanding this task.")
    reasoning: str = Field(..., description="Brief explanation for the complexity assessment.")

    @field_validator('complexityScore', mode='before')
    @classmethod
    def clamp_score(cls, v):
        return max(1, min(10, int(round(float(v)))))

    @field_validator('recommendedSubtasks', mode='before')
    @classmethod
    def at_least_one(cls, v):
        return max(1, int(round(float(v))))

class ReportMeta(BaseModel):
    model_config = ConfigDict(extra='allow')

    generatedAt: str = Field(default_factory=utc_now_iso)
    tasksAnalyzed: int = 0
    totalTasks: Optional[int] = None
    analysisCount: Optional[int] = None
    thresholdScore: float = 5
    usedResearch: bool = False
    scope: Optional[str] = None
    projectName: Optional[str] = None

class ComplexityReport(BaseModel):
    meta: ReportMeta = Field(default_factory=ReportMeta, description="Metadata about the report generation.")
    complexityAnalysis: List[ComplexityAnalysisItem] = Field([], description="List of complexity analyses for each task.")

# --- Generation Adapter Models ---
class TelemetryData(BaseModel):
    timestamp: str = Field(default_factory=utc_now_iso)
    commandName: Optional[str] = None
    role: Optional[str] = None
    modelUsed: Optional[str] = None
    inputTokens: int = 0
    outputTokens: int = 0
    totalTokens: int = 0
    totalCost: float = 0.0

class PromptPair(BaseModel):
    systemPrompt: str
    userPrompt: str

_ENVELOPE_KEYS = {"mainResult", "object", "telemetryData", "tagInfo"}

class GenerationResult(BaseModel):
    """Tagged result of one AI call: either raw text or a schema-validated object."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: Literal["text", "object"]
    value: Any
    telemetry: Optional[TelemetryData] = None

    @classmethod
    def from_raw(cls, raw: Any, telemetry: Optional[TelemetryData] = None) -> "GenerationResult":
        """Collapses the shapes providers hand back (bare value, `.object`, `.mainResult`) into one tag."""
        if isinstance(raw, GenerationResult):
            return raw
        while isinstance(raw, dict) and ("mainResult" in raw or "object" in raw) and set(raw) <= _ENVELOPE_KEYS:
            if telemetry is None and isinstance(raw.get("telemetryData"), dict):
                telemetry = TelemetryData.model_validate(raw["telemetryData"])
            raw = raw.get("mainResult", raw.get("object"))
        if isinstance(raw, str):
            return cls(kind="text", value=raw, telemetry=telemetry)
        if raw is None:
            return cls(kind="text", value="", telemetry=telemetry)
        return cls(kind="object", value=raw, telemetry=telemetry)

# --- Retrieval Models ---
class TaskTokenCount(BaseModel):
    id: str
    title: Optional[str] = None
    tokens: int

class FileTokenCount(BaseModel):
    path: str
    tokens: int
    sizeKB: float

class SectionTokenCount(BaseModel):
    tokens: int
    characters: int

class TokenBreakdown(BaseModel):
    customContext: Optional[SectionTokenCount] = None
    tasks: List[TaskTokenCount] = []
    files: List[FileTokenCount] = []
    projectTree: Optional[SectionTokenCount] = None
    total: int = 0

class ContextResult(BaseModel):
    context: str
    tokenBreakdown: TokenBreakdown
    format: Literal["research", "cli"] = "research"

class SearchItem(BaseModel):
    """One addressable leaf of the task corpus: a task ('3') or a subtask ('3.2')."""
    id: str
    taskNumber: int
    subtaskNumber: Optional[int] = None
    title: str
    description: str = ""
    status: Optional[str] = None
    updatedAt: Optional[str] = None

class SearchResult(BaseModel):
    id: str
    score: float
    taskNumber: int
    subtaskNumber: Optional[int] = None

# --- Operation Results ---
class ErrorInfo(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = {}

class OperationResult(BaseModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[ErrorInfo] = None
