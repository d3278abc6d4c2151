"""Scenario, step and report models."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, model_validator

StepKind = Literal["chat", "verify", "wait", "setup"]
StepStatus = Literal["passed", "failed", "skipped", "error"]
STEP_KINDS: tuple[str, ...] = ("chat", "verify", "wait", "setup")


# --------------------------------------------------------------------------
# Scenario definition
# --------------------------------------------------------------------------


class CountRange(BaseModel):
    min: Optional[int] = None
    max: Optional[int] = None


ToolCount = Union[int, CountRange]


class ToolAssertion(BaseModel):
    """Expectation about calls to a single tool."""

    name: str
    count: Optional[ToolCount] = None
    not_called: bool = False
    input: dict[str, Any] = Field(default_factory=dict)


class ResponseAssertion(BaseModel):
    """Expectations about the agent's response text."""

    mentions: list[str] = Field(default_factory=list)
    mentions_any: list[str] = Field(default_factory=list)
    not_mentions: list[str] = Field(default_factory=list)
    contains: Optional[str] = None
    contains_any: list[str] = Field(default_factory=list)
    matches: Optional[str] = None


class SetupInsert(BaseModel):
    """Row inserted before (or while) a scenario runs."""

    model_config = ConfigDict(populate_by_name=True)

    entity: str
    data: dict[str, Any] = Field(default_factory=dict)
    alias: Optional[str] = Field(default=None, alias="as")


class EntityVerification(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Union[str, int, None] = None
    title: Optional[str] = None
    fields: dict[str, Any] = Field(default_factory=dict)
    alias: Optional[str] = Field(default=None, alias="as")
    not_exists: bool = False

    @model_validator(mode="after")
    def _require_lookup_key(self) -> "EntityVerification":
        if self.id is None and self.title is None:
            raise ValueError("Entity verification needs either 'id' or 'title'")
        return self


class FixedDelay(BaseModel):
    seconds: float


class WaitCondition(BaseModel):
    entity: str
    id: Union[str, int]
    fields: dict[str, Any] = Field(default_factory=dict)


class ChatStep(BaseModel):
    kind: ClassVar[str] = "chat"

    label: Optional[str] = None
    chat: str
    tools: Union[dict[str, ToolCount], list[ToolAssertion], None] = None
    total_tool_calls: Optional[ToolCount] = None
    response: Optional[ResponseAssertion] = None
    conversation: Optional[str] = None
    continue_conversation: bool = False
    conversation_id: Optional[str] = None
    max_tool_calls: Optional[int] = None
    timeout: Optional[float] = None

    def tool_assertions(self) -> list[ToolAssertion]:
        if self.tools is None:
            return []
        if isinstance(self.tools, dict):
            return [ToolAssertion(name=name, count=count) for name, count in self.tools.items()]
        return list(self.tools)


class VerifyStep(BaseModel):
    kind: ClassVar[str] = "verify"

    label: Optional[str] = None
    verify: dict[str, list[EntityVerification]]


class WaitStep(BaseModel):
    kind: ClassVar[str] = "wait"

    label: Optional[str] = None
    wait: Union[FixedDelay, WaitCondition]
    timeout_seconds: float = 30.0
    interval_seconds: float = 1.0


class SetupStep(BaseModel):
    kind: ClassVar[str] = "setup"

    label: Optional[str] = None
    setup: SetupInsert


def _step_kind(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return next((kind for kind in STEP_KINDS if kind in value), None)
    return getattr(value, "kind", None)


Step = Annotated[
    Union[
        Annotated[ChatStep, Tag("chat")],
        Annotated[VerifyStep, Tag("verify")],
        Annotated[WaitStep, Tag("wait")],
        Annotated[SetupStep, Tag("setup")],
    ],
    Discriminator(_step_kind),
]


class Scenario(BaseModel):
    """One test case: optional setup rows followed by ordered steps."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    setup: list[SetupInsert] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)
    user_id: Optional[str] = None
    runs: Optional[int] = None
    timeout: Optional[float] = None


# --------------------------------------------------------------------------
# Agent responses
# --------------------------------------------------------------------------


class ToolCall(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None


class CostBreakdown(BaseModel):
    """Spend in USD attributed to one or more agent calls."""

    input_cost: float = 0.0
    output_cost: float = 0.0
    cache_write_cost: float = 0.0
    cache_read_cost: float = 0.0
    total_cost: float = 0.0

    def add(self, other: Optional["CostBreakdown"]) -> "CostBreakdown":
        if other is None:
            return self
        return CostBreakdown(
            input_cost=self.input_cost + other.input_cost,
            output_cost=self.output_cost + other.output_cost,
            cache_write_cost=self.cache_write_cost + other.cache_write_cost,
            cache_read_cost=self.cache_read_cost + other.cache_read_cost,
            total_cost=self.total_cost + other.total_cost,
        )


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    model: Optional[str] = None
    cost: Optional[CostBreakdown] = None

    def add(self, other: Optional["TokenUsage"]) -> "TokenUsage":
        if other is None:
            return self
        cost = other.cost if self.cost is None else self.cost.add(other.cost)
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cache_write_tokens=self.cache_write_tokens + other.cache_write_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            model=self.model or other.model,
            cost=cost,
        )


class _UsageEventBase(BaseModel):
    agent: Optional[str] = None
    timestamp: Optional[str] = None


class UserInputEvent(_UsageEventBase):
    kind: Literal["user-input"]
    text: str = ""


class AssistantOutputEvent(_UsageEventBase):
    kind: Literal["assistant-output"]
    text: str = ""


class ToolCallEvent(_UsageEventBase):
    kind: Literal["tool-call"]
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    origin: Optional[Literal["history", "current"]] = None


class ToolResultEvent(_UsageEventBase):
    kind: Literal["tool-result"]
    tool_name: str
    output: Any = None


class AgentStepEvent(_UsageEventBase):
    kind: Literal["agent-step"]
    step_number: Optional[int] = None


class SubAgentEvent(_UsageEventBase):
    kind: Literal["sub-agent-input", "sub-agent-output"]
    text: str = ""
    query: Optional[str] = None


UsageEvent = Annotated[
    Union[
        UserInputEvent,
        AssistantOutputEvent,
        ToolCallEvent,
        ToolResultEvent,
        AgentStepEvent,
        SubAgentEvent,
    ],
    Field(discriminator="kind"),
]


class AgentResponse(BaseModel):
    """Normalized reply from the agent under test."""

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    correlation_id: Optional[str] = None
    usage: Optional[TokenUsage] = None
    events: list[UsageEvent] = Field(default_factory=list)
    duration_ms: float = 0.0


# --------------------------------------------------------------------------
# Reports
# --------------------------------------------------------------------------


class AssertionResult(BaseModel):
    kind: str
    name: str
    passed: bool
    message: str = ""
    expected: Any = None
    actual: Any = None


class StepReport(BaseModel):
    """Runtime result for one step."""

    index: int
    label: Optional[str] = None
    type: StepKind
    status: StepStatus
    duration_ms: float = 0.0
    assertions: list[AssertionResult] = Field(default_factory=list)
    error: Optional[str] = None
    traceback: Optional[str] = None
    # chat
    response_text: Optional[str] = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    usage: Optional[TokenUsage] = None
    # verify
    entities_verified: Optional[int] = None
    # wait
    attempts: Optional[int] = None
    # setup
    inserted_id: Any = None
    captured_alias: Optional[str] = None

    @property
    def failed_assertions(self) -> list[AssertionResult]:
        return [item for item in self.assertions if not item.passed]

    @property
    def display_name(self) -> str:
        return self.label or f"step-{self.index}"


def derive_status(steps: list[StepReport], error: Optional[str] = None) -> StepStatus:
    """Overall status of a scenario: error > failed > passed."""

    if error is not None or any(step.status == "error" for step in steps):
        return "error"
    if any(step.status == "failed" for step in steps):
        return "failed"
    if steps and all(step.status == "skipped" for step in steps):
        return "skipped"
    return "passed"


class ScenarioReport(BaseModel):
    """Aggregated runtime result of one scenario execution."""

    scenario_id: str
    name: Optional[str] = None
    status: StepStatus
    user_id: str
    started_at: datetime
    finished_at: datetime
    duration_ms: float
    steps: list[StepReport] = Field(default_factory=list)
    captured: dict[str, dict[str, Any]] = Field(default_factory=dict)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    error: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status == "passed"

    def count(self, status: StepStatus) -> int:
        return sum(1 for step in self.steps if step.status == status)


class RunSummary(BaseModel):
    """Summary of a parallel run, written to summary.json."""

    run_id: str
    success: bool
    bailed: bool
    total: int
    passed: int
    failed: int
    errored: int
    skipped: int
    not_started: list[str] = Field(default_factory=list)
    duration_ms: float
    usage: TokenUsage = Field(default_factory=TokenUsage)
    reports: list[ScenarioReport] = Field(default_factory=list)


class MetricStats(BaseModel):
    count: int = 0
    mean: float = 0.0
    median: float = 0.0
    min: float = 0.0
    max: float = 0.0
    std_dev: float = 0.0


class CostStatistics(BaseModel):
    input_cost: MetricStats = Field(default_factory=MetricStats)
    output_cost: MetricStats = Field(default_factory=MetricStats)
    cache_write_cost: MetricStats = Field(default_factory=MetricStats)
    cache_read_cost: MetricStats = Field(default_factory=MetricStats)
    total_cost: MetricStats = Field(default_factory=MetricStats)


class ErrorOccurrence(BaseModel):
    message: str
    count: int


class HallucinationOccurrence(BaseModel):
    run: int
    step_index: int
    keywords: list[str]
    missing_tools: list[str] = Field(default_factory=list)
    failed_tools: list[str] = Field(default_factory=list)
    response_excerpt: str = ""


class StepHallucinations(BaseModel):
    step_index: int
    label: Optional[str] = None
    occurrences: int
    rate: float
    samples: list[HallucinationOccurrence] = Field(default_factory=list)


class StepStatistics(BaseModel):
    index: int
    label: Optional[str] = None
    type: StepKind
    runs: int
    pass_count: int
    fail_count: int
    skipped_count: int
    pass_rate: float
    is_flaky: bool
    duration: MetricStats = Field(default_factory=MetricStats)
    errors: list[ErrorOccurrence] = Field(default_factory=list)
    hallucination_count: int = 0
    hallucination_rate: float = 0.0


class AggregatedScenarioReport(BaseModel):
    """Statistics across repeated runs of one scenario."""

    scenario_id: str
    name: Optional[str] = None
    runs_requested: int
    runs_completed: int
    success: bool
    pass_count: int
    fail_count: int
    pass_rate: float
    is_flaky: bool
    duration: MetricStats = Field(default_factory=MetricStats)
    input_tokens: MetricStats = Field(default_factory=MetricStats)
    output_tokens: MetricStats = Field(default_factory=MetricStats)
    total_tokens: MetricStats = Field(default_factory=MetricStats)
    cost: Optional[CostStatistics] = None
    steps: list[StepStatistics] = Field(default_factory=list)
    errors: list[ErrorOccurrence] = Field(default_factory=list)
    hallucinations: list[StepHallucinations] = Field(default_factory=list)
    reports: list[ScenarioReport] = Field(default_factory=list)
