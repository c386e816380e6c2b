from __future__ import annotations

from pathlib import Path

import allure
import pytest
from _support import write_script

from turnkeeper.loop.callbacks import CallbackOutcome, CallbackRunner
from turnkeeper.loop.contracts import CallbackContext, HookPoint, InvalidHookPointError
from turnkeeper.loop.hooks import HookInvocation, HookRegistry

pytestmark = [
    allure.epic("Iteration Control"),
    allure.feature("Hooks"),
]


def test_handlers_run_in_registration_order_and_see_point() -> None:
    seen: list[tuple[str, HookPoint, tuple[object, ...]]] = []
    registry = HookRegistry()
    registry.register("pre_iteration", lambda call: seen.append(("first", call.point, call.args)))
    registry.register("pre_iteration", lambda call: seen.append(("second", call.point, call.args)))

    result = registry.execute("pre_iteration", 7)

    assert result.ok
    assert result.handlers_run == 2
    assert seen == [
        ("first", HookPoint.PRE_ITERATION, (7,)),
        ("second", HookPoint.PRE_ITERATION, (7,)),
    ]


def test_failures_do_not_stop_remaining_handlers() -> None:
    calls: list[str] = []

    def returns_false(call: HookInvocation) -> bool:
        calls.append("false")
        return False

    def raises(call: HookInvocation) -> None:
        calls.append("raise")
        raise RuntimeError("broken hook")

    def succeeds(call: HookInvocation) -> None:
        calls.append("ok")

    registry = HookRegistry()
    for handler in (returns_false, raises, succeeds):
        registry.register(HookPoint.POST_ITERATION, handler)

    result = registry.execute(HookPoint.POST_ITERATION)

    assert calls == ["false", "raise", "ok"]
    assert not result.ok
    assert result.exit_code == 1
    assert [failure.error for failure in result.failures] == [None, "broken hook"]


def test_points_are_isolated() -> None:
    registry = HookRegistry()
    registry.register("on_error", lambda call: False)

    assert registry.execute("on_completion").ok
    assert registry.handlers("on_completion") == []


def test_unknown_point_is_validation_error() -> None:
    registry = HookRegistry()

    with pytest.raises(InvalidHookPointError, match="before_commit"):
        registry.register("before_commit", lambda call: None)
    with pytest.raises(InvalidHookPointError):
        registry.execute("before_commit")


def test_string_reference_is_resolved_at_registration() -> None:
    registry = HookRegistry()

    name = registry.register("pre_run", "_support:passing_hook")

    assert name == "_support:passing_hook"
    assert registry.execute("pre_run").ok


@pytest.mark.parametrize(
    "reference",
    ["no_colon", "missing_module_xyz:handler", "_support:does_not_exist", "_support:__doc__"],
)
def test_bad_reference_fails_at_registration(reference: str) -> None:
    with pytest.raises(ValueError, match="Hook reference|module:function"):
        HookRegistry().register("pre_run", reference)


def test_from_mapping_builds_registry() -> None:
    registry = HookRegistry.from_mapping(
        {"pre_run": ["_support:passing_hook"], "post_run": [lambda call: None]},
    )

    assert registry.handlers("pre_run") == ["_support:passing_hook"]
    assert len(registry.handlers("post_run")) == 1


def test_unregister_and_clear() -> None:
    registry = HookRegistry()
    name = registry.register("pre_run", "_support:passing_hook")
    registry.register("post_run", "_support:passing_hook")

    registry.unregister("pre_run", name)
    assert registry.handlers("pre_run") == []

    registry.clear()
    assert registry.handlers("post_run") == []


def test_execute_runs_callback_script_with_context(tmp_path: Path) -> None:
    callbacks_dir = tmp_path / "callbacks"
    write_script(callbacks_dir / "post_iteration.sh", "exit 75")
    registry = HookRegistry(callback_runner=CallbackRunner(callbacks_dir))
    context = CallbackContext.create(hook_point="pre_run", story_id="T-001", iteration=1)

    result = registry.execute("post_iteration", context=context)

    assert result.callback is not None
    assert result.callback.outcome is CallbackOutcome.VERIFICATION_FAILED
    assert result.soft_failure
    assert not result.ok
    assert result.exit_code == 75
    assert context.hook_point == "pre_run"


def test_handler_failure_is_hard_even_with_soft_callback(tmp_path: Path) -> None:
    callbacks_dir = tmp_path / "callbacks"
    write_script(callbacks_dir / "post_iteration.sh", "exit 75")
    registry = HookRegistry(callback_runner=CallbackRunner(callbacks_dir))
    registry.register("post_iteration", lambda call: False)

    result = registry.execute(
        "post_iteration",
        context=CallbackContext.create(hook_point="post_iteration"),
    )

    assert not result.soft_failure
    assert not result.ok


def test_callback_skipped_without_context(tmp_path: Path) -> None:
    callbacks_dir = tmp_path / "callbacks"
    write_script(callbacks_dir / "pre_run.sh", "exit 1")
    registry = HookRegistry(callback_runner=CallbackRunner(callbacks_dir))

    result = registry.execute("pre_run")

    assert result.callback is None
    assert result.ok
