"""Field, tool and response checks used by the step executor."""

from __future__ import annotations

from typing import Any, Optional
import json
import re

from .models import AssertionResult, CountRange, ResponseAssertion, ToolAssertion, ToolCall, ToolCount

_COMPARATORS = {
    "gt": (lambda actual, bound: actual > bound, ">"),
    "gte": (lambda actual, bound: actual >= bound, ">="),
    "lt": (lambda actual, bound: actual < bound, "<"),
    "lte": (lambda actual, bound: actual <= bound, "<="),
}


def match_field(actual: Any, matcher: Any) -> tuple[bool, str]:
    """Compare one value against a literal or a matcher mapping.

    Matcher mappings support ``contains``, ``exists``, ``gt``/``gte``/``lt``/``lte``,
    ``matches`` and ``any_of``. Anything else is compared by equality.
    """

    if isinstance(matcher, dict):
        if "exists" in matcher:
            exists = actual is not None
            if exists == bool(matcher["exists"]):
                return True, ""
            return False, "expected field to exist" if matcher["exists"] else f"expected no value, got {actual!r}"
        if actual is None:
            return False, "field is missing"
        if "contains" in matcher:
            targets = matcher["contains"] if isinstance(matcher["contains"], list) else [matcher["contains"]]
            haystack = actual if isinstance(actual, (list, str)) else str(actual)
            missing = [target for target in targets if target not in haystack]
            if missing:
                return False, f"{actual!r} does not contain {', '.join(map(str, missing))}"
            return True, ""
        if "matches" in matcher:
            if re.search(str(matcher["matches"]), str(actual)):
                return True, ""
            return False, f"{actual!r} does not match /{matcher['matches']}/"
        if "any_of" in matcher:
            if any(match_field(actual, option)[0] for option in matcher["any_of"]):
                return True, ""
            return False, f"{actual!r} matches none of {matcher['any_of']!r}"
        comparisons = [key for key in _COMPARATORS if key in matcher]
        if comparisons:
            try:
                number = float(actual)
            except (TypeError, ValueError):
                return False, f"{actual!r} is not numeric"
            for key in comparisons:
                check, symbol = _COMPARATORS[key]
                if not check(number, float(matcher[key])):
                    return False, f"expected {symbol} {matcher[key]}, got {actual!r}"
            return True, ""
    if actual == matcher:
        return True, ""
    if isinstance(matcher, bool) and isinstance(actual, str):
        if (actual.lower() == "true") == matcher:
            return True, ""
    elif isinstance(matcher, (int, float)) and isinstance(actual, str):
        try:
            if float(actual) == matcher:
                return True, ""
        except ValueError:
            pass
    return False, f"expected {json.dumps(matcher, default=str)}, got {json.dumps(actual, default=str)}"


def check_fields(row: dict[str, Any], expected: dict[str, Any], *, owner: str) -> list[AssertionResult]:
    results: list[AssertionResult] = []
    for field_name, matcher in expected.items():
        actual = row.get(field_name)
        passed, reason = match_field(actual, matcher)
        results.append(
            AssertionResult(
                kind="field",
                name=f"{owner}.{field_name}",
                passed=passed,
                message="" if passed else f"{owner}.{field_name}: {reason}",
                expected=matcher,
                actual=actual,
            )
        )
    return results


def _count_matches(count: Optional[ToolCount], actual: int) -> tuple[bool, str]:
    if count is None:
        return actual >= 1, "at least 1 call"
    if isinstance(count, CountRange):
        low_ok = count.min is None or actual >= count.min
        high_ok = count.max is None or actual <= count.max
        bounds = f"{count.min if count.min is not None else 0}..{count.max if count.max is not None else 'inf'} calls"
        return low_ok and high_ok, bounds
    return actual == count, f"{count} call(s)"


def check_tools(expectations: list[ToolAssertion], calls: list[ToolCall]) -> list[AssertionResult]:
    """Check tool call expectations against the calls an agent made."""

    results: list[AssertionResult] = []
    for expectation in expectations:
        matching = [call for call in calls if call.name == expectation.name]
        actual = len(matching)
        if expectation.not_called:
            passed = actual == 0
            results.append(
                AssertionResult(
                    kind="tool_absent",
                    name=expectation.name,
                    passed=passed,
                    message="" if passed else f"{expectation.name}: expected 0 call(s), got {actual}",
                    expected=0,
                    actual=actual,
                )
            )
            continue

        passed, wanted = _count_matches(expectation.count, actual)
        results.append(
            AssertionResult(
                kind="tool",
                name=expectation.name,
                passed=passed,
                message="" if passed else f"{expectation.name}: expected {wanted}, got {actual}",
                expected=wanted,
                actual=actual,
            )
        )
        if expectation.input and matching:
            results.append(_check_tool_input(expectation, matching))
    return results


def _check_tool_input(expectation: ToolAssertion, calls: list[ToolCall]) -> AssertionResult:
    reasons: list[str] = []
    for call in calls:
        failures = []
        for field_name, matcher in expectation.input.items():
            passed, reason = match_field(call.args.get(field_name), matcher)
            if not passed:
                failures.append(f"{field_name}: {reason}")
        if not failures:
            return AssertionResult(kind="tool_input", name=expectation.name, passed=True, expected=expectation.input)
        reasons.append("; ".join(failures))
    return AssertionResult(
        kind="tool_input",
        name=expectation.name,
        passed=False,
        message=f"{expectation.name}: no call matched input ({reasons[-1]})",
        expected=expectation.input,
        actual=[call.args for call in calls],
    )


def check_total_tool_calls(expected: ToolCount, calls: list[ToolCall]) -> AssertionResult:
    passed, wanted = _count_matches(expected, len(calls))
    return AssertionResult(
        kind="tool_total",
        name="total_tool_calls",
        passed=passed,
        message="" if passed else f"total tool calls: expected {wanted}, got {len(calls)}",
        expected=wanted,
        actual=len(calls),
    )


def check_response(expectation: ResponseAssertion, text: str) -> list[AssertionResult]:
    lowered = text.lower()
    results: list[AssertionResult] = []

    def record(name: str, passed: bool, message: str, expected: Any) -> None:
        results.append(
            AssertionResult(
                kind="response",
                name=name,
                passed=passed,
                message="" if passed else message,
                expected=expected,
            )
        )

    for term in expectation.mentions:
        record(f"mentions:{term}", term.lower() in lowered, f"response does not mention '{term}'", term)
    if expectation.mentions_any:
        found = any(term.lower() in lowered for term in expectation.mentions_any)
        record(
            "mentions_any",
            found,
            f"response mentions none of {expectation.mentions_any}",
            expectation.mentions_any,
        )
    for term in expectation.not_mentions:
        record(f"not_mentions:{term}", term.lower() not in lowered, f"response mentions '{term}'", term)
    if expectation.contains is not None:
        record(
            "contains",
            expectation.contains in text,
            f"response does not contain '{expectation.contains}'",
            expectation.contains,
        )
    if expectation.contains_any:
        record(
            "contains_any",
            any(term in text for term in expectation.contains_any),
            f"response contains none of {expectation.contains_any}",
            expectation.contains_any,
        )
    if expectation.matches is not None:
        record(
            "matches",
            re.search(expectation.matches, text) is not None,
            f"response does not match /{expectation.matches}/",
            expectation.matches,
        )
    return results
