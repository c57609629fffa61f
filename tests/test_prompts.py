from pathlib import Path

from specloop.gates import GateResult
from specloop.prompts import (
    compose_retry_prompt,
    compose_task_prompt,
    load_preamble,
    truncate_output,
)
from specloop.state import Spec, Task


def _spec() -> Spec:
    return Spec(
        id="checkout",
        file=".specloop/specs/checkout.md",
        name="Checkout flow",
        context="Cart lives in src/cart/.",
        tasks=[
            Task(id="checkout-1", description="Cart totals", status="completed"),
            Task(id="checkout-2", description="Apply coupon codes", acceptance_criteria=["10% off"]),
            Task(id="checkout-3", description="Persist orders in Postgres"),
            Task(id="checkout-4", description="Send receipt emails", status="blocked"),
        ],
    )


def test_task_prompt_isolates_the_assignment() -> None:
    spec = _spec()
    prompt = compose_task_prompt(spec, spec.tasks[1], preamble="PREAMBLE")

    assert prompt.startswith("PREAMBLE")
    assert "# Task: Apply coupon codes" in prompt
    assert "You are working on: **Checkout flow**" in prompt
    assert "Cart lives in src/cart/." in prompt
    assert "- [x] Cart totals" in prompt
    assert "> Apply coupon codes" in prompt
    assert "- [ ] 10% off" in prompt
    assert "<TASK_DONE>" in prompt
    assert '<TASK_BLOCKED reason="' in prompt
    assert "Persist orders in Postgres" not in prompt
    assert "Send receipt emails" not in prompt


def test_task_prompt_placeholders() -> None:
    spec = Spec(id="bare", file="bare.md", name="Bare", tasks=[Task(id="bare-1", description="Do it")])
    prompt = compose_task_prompt(spec, spec.tasks[0], preamble="P")

    assert "_No additional context provided._" in prompt
    assert "_No tasks completed yet._" in prompt
    assert "_No specific acceptance criteria._" in prompt


def test_retry_prompt_carries_gate_evidence() -> None:
    spec = _spec()
    failed = [
        GateResult(
            name="typecheck",
            command="npm run typecheck",
            passed=False,
            exit_code=2,
            output="src/cart.ts(4,1): typecheck: error TS123: nope",
        )
    ]
    prompt = compose_retry_prompt(spec, spec.tasks[1], failed, previous_attempt=1, preamble="P")

    assert prompt.startswith(compose_task_prompt(spec, spec.tasks[1], preamble="P").rstrip())
    assert "## Previous Attempt Failed" in prompt
    assert "This is retry attempt #2." in prompt
    assert "### typecheck (exit code 2)" in prompt
    assert "typecheck: error TS123" in prompt
    assert "Persist orders in Postgres" not in prompt


def test_truncate_output_keeps_head_and_tail() -> None:
    output = "HEAD" + "x" * 5000 + "TAIL"
    truncated = truncate_output(output, max_chars=100)

    assert truncated.startswith("HEAD")
    assert truncated.endswith("TAIL")
    assert "... (truncated 4908 chars) ..." in truncated
    assert truncate_output("short", max_chars=100) == "short"


def test_load_preamble_prefers_project_override(tmp_path: Path) -> None:
    override = tmp_path / "PROMPT_build.md"

    packaged = load_preamble("build", override)
    assert "version control" in packaged
    override.write_text("Custom rules\n", encoding="utf-8")
    assert load_preamble("build", override) == "Custom rules"
    assert "<STATUS>DONE</STATUS>" in load_preamble("plan")
