import pytest

from runs.models import (
    SHARE_TOKEN_LENGTH,
    LocatorBundle,
    StepAction,
    TestFile,
    TestRun,
    TestRunStatus,
    TestStep,
    new_share_token,
)


def test_step_action_parses_aliases_case_insensitively():
    assert StepAction.parse("Goto") is StepAction.NAVIGATE
    assert StepAction.parse("TYPE") is StepAction.FILL
    assert StepAction.parse("double_click") is StepAction.DOUBLE_CLICK
    with pytest.raises(ValueError, match="Unknown action type: scroll"):
        StepAction.parse("scroll")


def test_locator_bundle_accepts_wire_payload():
    bundle = LocatorBundle.model_validate(
        {
            "role": {"role": "button", "name": "Save"},
            "testId": "save",
            "css": "",
            "assertionType": "visible",
            "recordedAt": 123,
        }
    )

    assert bundle.strategies() == ["role", "testId"]
    assert bundle.role.name == "Save"
    assert bundle.assertion_type == "visible"
    assert bundle.model_dump(by_alias=True, exclude_none=True) == {
        "role": {"role": "button", "name": "Save"},
        "testId": "save",
        "assertionType": "visible",
    }


def test_locator_bundle_strategy_order_is_fixed():
    bundle = LocatorBundle(xpath="//a", css="a", title="t", altText="alt", text="x", placeholder="p", label="l",
                           testId="id", role="link", qaId="qa")
    assert bundle.strategies() == list(LocatorBundle.PRIORITY)
    assert LocatorBundle().is_empty()


def test_test_step_stringifies_value():
    step = TestStep.model_validate({"stepNumber": 2, "action": "wait", "value": 1.5})
    assert step.value == "1.5"
    assert StepAction.parse(step.action) is StepAction.WAIT
    with pytest.raises(ValueError):
        TestStep.model_validate({"stepNumber": 0, "action": "click"})


def test_test_file_orders_steps():
    test_file = TestFile(
        ownerId="u1",
        baseUrl="https://x.test",
        steps=[TestStep(stepNumber=3, action="click"), TestStep(stepNumber=1, action="navigate")],
    )
    assert [step.step_number for step in test_file.ordered_steps()] == [1, 3]


def test_run_defaults_and_terminal_states():
    run = TestRun(testFileId="tf")
    assert run.status is TestRunStatus.PENDING
    assert len(run.share_token) == SHARE_TOKEN_LENGTH
    assert run.started_at is None and run.ended_at is None
    assert not TestRunStatus.RUNNING.is_terminal
    assert all(status.is_terminal for status in (TestRunStatus.PASSED, TestRunStatus.FAILED, TestRunStatus.CANCELLED))


def test_share_tokens_are_url_safe_and_unique():
    tokens = {new_share_token() for _ in range(200)}
    assert len(tokens) == 200
    assert all(len(token) == SHARE_TOKEN_LENGTH for token in tokens)
    assert all(token.replace("-", "").replace("_", "").isalnum() for token in tokens)
