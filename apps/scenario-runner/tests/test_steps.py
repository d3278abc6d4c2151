from __future__ import annotations

from typing import Any, Optional

from pydantic import TypeAdapter

from scenario_runner.adapters import AgentAdapter, EntitySchema, InMemoryDatabase
from scenario_runner.context import ExecutionContext
from scenario_runner.errors import AdapterError
from scenario_runner.models import AgentResponse, Step, ToolCall
from scenario_runner.steps import StepExecutor, poll_until

STEP = TypeAdapter(Step)


class ScriptedAgent(AgentAdapter):
    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def chat(
        self,
        message: str,
        *,
        user_id: str,
        conversation_id: Optional[str] = None,
        max_tool_calls: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AgentResponse:
        self.calls.append({"message": message, "user_id": user_id, "conversation_id": conversation_id})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def _executor(agent: AgentAdapter, database: InMemoryDatabase, clock: Optional[FakeClock] = None) -> StepExecutor:
    clock = clock or FakeClock()
    return StepExecutor(agent=agent, database=database, sleep=clock.sleep, clock=clock)


def test_named_conversations_are_tracked_independently() -> None:
    agent = ScriptedAgent(
        [
            AgentResponse(text="hi", conversation_id="conv-a"),
            AgentResponse(text="again", conversation_id="conv-a"),
            AgentResponse(text="other", conversation_id="conv-b"),
        ]
    )
    executor = _executor(agent, InMemoryDatabase())
    context = ExecutionContext(user_id="user-1")

    for index, raw in enumerate(
        [
            {"chat": "hello", "conversation": "first"},
            {"chat": "still there?", "conversation": "first"},
            {"chat": "new topic", "conversation": "second"},
        ],
        start=1,
    ):
        report = executor.execute(STEP.validate_python(raw), index, context)
        assert report.status == "passed"

    assert [call["conversation_id"] for call in agent.calls] == [None, "conv-a", None]
    assert context.conversations == {"first": "conv-a", "second": "conv-b"}
    assert all(call["user_id"] == "user-1" for call in agent.calls)


def test_continue_conversation_reuses_last_conversation() -> None:
    agent = ScriptedAgent([AgentResponse(conversation_id="conv-1"), AgentResponse(conversation_id="conv-1")])
    executor = _executor(agent, InMemoryDatabase())
    context = ExecutionContext()

    executor.execute(STEP.validate_python({"chat": "one"}), 1, context)
    executor.execute(STEP.validate_python({"chat": "two", "continue_conversation": True}), 2, context)

    assert agent.calls[1]["conversation_id"] == "conv-1"


def test_chat_tool_assertion_failure_marks_step_failed() -> None:
    agent = ScriptedAgent([AgentResponse(text="I created the task", tool_calls=[ToolCall(name="search")])])
    executor = _executor(agent, InMemoryDatabase())

    report = executor.execute(
        STEP.validate_python({"label": "create", "chat": "create a task", "tools": {"create_task": 1}}),
        1,
        ExecutionContext(),
    )

    assert report.status == "failed"
    assert report.error == "create_task: expected 1 call(s), got 0"
    assert report.response_text == "I created the task"
    assert [item.kind for item in report.failed_assertions] == ["tool"]


def test_chat_response_and_tool_input_checks() -> None:
    agent = ScriptedAgent(
        [
            AgentResponse(
                text="Your task Buy milk is saved.",
                tool_calls=[ToolCall(name="create_task", args={"title": "Buy milk", "userId": "user-9"})],
            )
        ]
    )
    executor = _executor(agent, InMemoryDatabase())
    step = STEP.validate_python(
        {
            "chat": "add buy milk",
            "tools": [{"name": "create_task", "input": {"title": {"contains": "milk"}, "userId": "$userId"}}],
            "total_tool_calls": {"max": 2},
            "response": {"mentions": ["buy milk"], "not_mentions": ["error"]},
        }
    )

    report = executor.execute(step, 1, ExecutionContext(user_id="user-9"))

    assert report.status == "passed", report.error
    assert {item.kind for item in report.assertions} == {"tool", "tool_input", "tool_total", "response"}


def test_agent_exception_becomes_error_with_traceback() -> None:
    agent = ScriptedAgent([AdapterError("HTTP 500: boom")])
    executor = _executor(agent, InMemoryDatabase())

    report = executor.execute(STEP.validate_python({"chat": "hello"}), 1, ExecutionContext())

    assert report.status == "error"
    assert report.error == "HTTP 500: boom"
    assert report.traceback and "AdapterError" in report.traceback


def test_setup_injects_owner_and_verify_uses_alias() -> None:
    database = InMemoryDatabase(schemas={"tasks": EntitySchema(ownership_column="user_id")})
    executor = _executor(ScriptedAgent([]), database)
    context = ExecutionContext(user_id="owner-1")

    setup = executor.execute(
        STEP.validate_python({"setup": {"entity": "tasks", "data": {"title": "Buy milk", "done": False}, "as": "task"}}),
        1,
        context,
    )
    assert setup.status == "passed"
    assert setup.captured_alias == "task"

    verify = executor.execute(
        STEP.validate_python(
            {
                "verify": {
                    "tasks": [
                        {"id": "$task.id", "fields": {"user_id": "$userId", "done": False}},
                        {"title": "Nothing here", "not_exists": True},
                    ]
                }
            }
        ),
        2,
        context,
    )

    assert verify.status == "passed", verify.error
    assert verify.entities_verified == 1
    assert database.find_by_id("tasks", setup.inserted_id)["user_id"] == "owner-1"


def test_verify_reports_missing_entity_and_field_mismatch() -> None:
    database = InMemoryDatabase(rows={"tasks": [{"id": "t-1", "title": "Buy milk", "done": "false"}]})
    executor = _executor(ScriptedAgent([]), database)

    report = executor.execute(
        STEP.validate_python(
            {"verify": {"tasks": [{"id": "t-1", "fields": {"done": True}}, {"id": "t-404"}]}}
        ),
        1,
        ExecutionContext(),
    )

    assert report.status == "failed"
    messages = [item.message for item in report.failed_assertions]
    assert messages[0].startswith("tasks[t-1].done: expected true")
    assert messages[1] == "tasks[t-404]: not found"


class _EventuallyDone(InMemoryDatabase):
    def __init__(self, ready_after: int) -> None:
        super().__init__(rows={"jobs": [{"id": "j-1", "status": "pending"}]})
        self.ready_after = ready_after
        self.lookups = 0

    def find_by_id(self, entity: str, entity_id: Any) -> Optional[dict[str, Any]]:
        self.lookups += 1
        if self.lookups >= self.ready_after:
            self.update(entity, entity_id, {"status": "done"})
        return super().find_by_id(entity, entity_id)


def test_wait_step_polls_until_condition_holds() -> None:
    clock = FakeClock()
    database = _EventuallyDone(ready_after=3)
    executor = _executor(ScriptedAgent([]), database, clock)
    step = STEP.validate_python(
        {"wait": {"entity": "jobs", "id": "j-1", "fields": {"status": "done"}}, "timeout_seconds": 10, "interval_seconds": 2}
    )

    report = executor.execute(step, 1, ExecutionContext())

    assert report.status == "passed"
    assert report.attempts == 3
    assert clock.now == 4


def test_wait_step_times_out_with_attempt_count() -> None:
    clock = FakeClock()
    executor = _executor(ScriptedAgent([]), _EventuallyDone(ready_after=100), clock)
    step = STEP.validate_python(
        {"wait": {"entity": "jobs", "id": "j-1", "fields": {"status": "done"}}, "timeout_seconds": 3, "interval_seconds": 1}
    )

    report = executor.execute(step, 1, ExecutionContext())

    assert report.status == "failed"
    assert report.attempts == 4
    assert report.error.startswith("Condition not met after 4 attempt(s)")


def test_fixed_delay_sleeps_once() -> None:
    clock = FakeClock()
    executor = _executor(ScriptedAgent([]), InMemoryDatabase(), clock)

    report = executor.execute(STEP.validate_python({"wait": {"seconds": 1.5}}), 1, ExecutionContext())

    assert report.status == "passed"
    assert clock.now == 1.5


def test_poll_until_evaluates_condition_at_least_once() -> None:
    clock = FakeClock()
    seen: list[int] = []

    assert poll_until(lambda: True, timeout=0, interval=1, on_attempt=seen.append, sleep=clock.sleep, clock=clock)
    assert seen == [1]
    assert clock.now == 0


def test_named_conversation_wins_over_continue_conversation() -> None:
    agent = ScriptedAgent(
        [
            AgentResponse(text="hi", conversation_id="c-main"),
            AgentResponse(text="named", conversation_id="c-a"),
            AgentResponse(text="elsewhere", conversation_id="c-other"),
            AgentResponse(text="back", conversation_id="c-a"),
        ]
    )
    executor = _executor(agent, InMemoryDatabase())
    context = ExecutionContext()

    for index, raw in enumerate(
        [
            {"chat": "start"},
            {"chat": "open a", "conversation": "a", "continue_conversation": True},
            {"chat": "side topic"},
            {"chat": "resume a", "conversation": "a", "continue_conversation": True},
        ],
        start=1,
    ):
        executor.execute(STEP.validate_python(raw), index, context)

    assert [call["conversation_id"] for call in agent.calls] == [None, None, None, "c-a"]


class _RejectingDatabase(InMemoryDatabase):
    def find_by_id(self, entity: str, entity_id: Any) -> Optional[dict[str, Any]]:
        raise AdapterError(f"connection refused while reading {entity}")

    def insert(self, entity: str, data: dict[str, Any]) -> dict[str, Any]:
        raise AdapterError(f"insert into {entity} rejected")


def test_database_rejections_become_errors() -> None:
    executor = _executor(ScriptedAgent([]), _RejectingDatabase())

    verify = executor.execute(STEP.validate_python({"verify": {"tasks": [{"id": "t-1"}]}}), 1, ExecutionContext())
    wait = executor.execute(
        STEP.validate_python({"wait": {"entity": "jobs", "id": "j-1", "fields": {"status": "done"}}}),
        2,
        ExecutionContext(),
    )
    setup = executor.execute(
        STEP.validate_python({"setup": {"entity": "tasks", "data": {"title": "Buy milk"}}}),
        3,
        ExecutionContext(),
    )

    assert (verify.status, wait.status, setup.status) == ("error", "error", "error")
    assert verify.error == "connection refused while reading tasks"
    assert wait.error == "connection refused while reading jobs"
    assert setup.error == "insert into tasks rejected"
