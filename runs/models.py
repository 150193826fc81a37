"""Typed models for recorded test steps and test-run records."""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

SHARE_TOKEN_LENGTH = 12


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def new_share_token() -> str:
    # token_urlsafe(9) yields exactly 12 URL-safe characters
    return secrets.token_urlsafe(9)[:SHARE_TOKEN_LENGTH]


class StepAction(str, Enum):
    NAVIGATE = "navigate"
    CLICK = "click"
    FILL = "fill"
    SELECT = "select"
    HOVER = "hover"
    PRESS = "press"
    ASSERT = "assert"
    WAIT = "wait"
    REFRESH = "refresh"
    GO_BACK = "go_back"
    CLEAR = "clear"
    DOUBLE_CLICK = "double_click"

    @classmethod
    def parse(cls, value: Any) -> "StepAction":
        """Parse a recorded action name, accepting legacy aliases."""

        if isinstance(value, StepAction):
            return value
        name = str(value or "").strip().lower()
        name = _ACTION_ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"Unknown action type: {value}") from None


_ACTION_ALIASES: Dict[str, str] = {
    "goto": "navigate",
    "type": "fill",
}


class TestRunStatus(str, Enum):
    __test__ = False

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (TestRunStatus.PASSED, TestRunStatus.FAILED, TestRunStatus.CANCELLED)


class StepResultStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_completed(self) -> bool:
        return self in (StepResultStatus.PASSED, StepResultStatus.FAILED, StepResultStatus.SKIPPED)


class TestErrorType(str, Enum):
    __test__ = False

    CONSOLE_ERROR = "CONSOLE_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    ASSERTION_ERROR = "ASSERTION_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    ELEMENT_NOT_FOUND = "ELEMENT_NOT_FOUND"
    OTHER = "OTHER"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RoleLocator(_Model):
    role: str
    name: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_from_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"role": value}
        return value


class LocatorBundle(_Model):
    """Candidate strategies recorded for a single element."""

    qa_id: Optional[str] = Field(default=None, alias="qaId")
    role: Optional[RoleLocator] = None
    test_id: Optional[str] = Field(default=None, alias="testId")
    label: Optional[str] = None
    placeholder: Optional[str] = None
    text: Optional[str] = None
    alt_text: Optional[str] = Field(default=None, alias="altText")
    title: Optional[str] = None
    css: Optional[str] = None
    xpath: Optional[str] = None
    assertion_type: Optional[str] = Field(default=None, alias="assertionType")

    PRIORITY: ClassVar[Tuple[str, ...]] = (
        "qaId",
        "role",
        "testId",
        "label",
        "placeholder",
        "text",
        "altText",
        "title",
        "css",
        "xpath",
    )

    _FIELDS: ClassVar[Dict[str, str]] = {
        "qaId": "qa_id",
        "role": "role",
        "testId": "test_id",
        "label": "label",
        "placeholder": "placeholder",
        "text": "text",
        "altText": "alt_text",
        "title": "title",
        "css": "css",
        "xpath": "xpath",
    }

    @field_validator(
        "qa_id", "test_id", "label", "placeholder", "text", "alt_text", "title", "css", "xpath", "assertion_type"
    )
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value if value.strip() else None

    def get(self, strategy: str) -> Any:
        return getattr(self, self._FIELDS[strategy])

    def strategies(self) -> List[str]:
        """Return the strategies present in this bundle, in priority order."""

        return [name for name in self.PRIORITY if self.get(name) is not None]

    def is_empty(self) -> bool:
        return not self.strategies()


class TestStep(_Model):
    __test__ = False

    id: str = Field(default_factory=new_id)
    test_file_id: Optional[str] = Field(default=None, alias="testFileId")
    step_number: int = Field(alias="stepNumber", ge=1)
    action: str
    description: str = ""
    value: Optional[str] = None
    locators: Optional[LocatorBundle] = None
    element_screenshot: Optional[str] = Field(default=None, alias="elementScreenshot")

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class TestFile(_Model):
    """Read-only view of a test file with its steps and owning project."""

    __test__ = False

    id: str = Field(default_factory=new_id)
    name: str = ""
    folder_id: Optional[str] = Field(default=None, alias="folderId")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    owner_id: str = Field(alias="ownerId")
    base_url: str = Field(alias="baseUrl", validation_alias=AliasChoices("baseUrl", "base_url"))
    steps: List[TestStep] = Field(default_factory=list)

    def ordered_steps(self) -> List[TestStep]:
        return sorted(self.steps, key=lambda step: step.step_number)


class TestRun(_Model):
    __test__ = False

    id: str = Field(default_factory=new_id)
    test_file_id: str = Field(alias="testFileId")
    status: TestRunStatus = TestRunStatus.PENDING
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")
    ended_at: Optional[datetime] = Field(default=None, alias="endedAt")
    share_token: str = Field(default_factory=new_share_token, alias="shareToken")
    video_url: Optional[str] = Field(default=None, alias="videoUrl")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    headless: bool = True


class StepResult(_Model):
    id: str = Field(default_factory=new_id)
    test_run_id: str = Field(alias="testRunId")
    test_step_id: str = Field(alias="testStepId")
    status: StepResultStatus = StepResultStatus.PENDING
    duration: Optional[int] = None
    error: Optional[str] = None
    locator_used: Optional[str] = Field(default=None, alias="locatorUsed")
    screenshot_url: Optional[str] = Field(default=None, alias="screenshotUrl")


class TestError(_Model):
    __test__ = False

    id: str = Field(default_factory=new_id)
    test_run_id: str = Field(alias="testRunId")
    type: TestErrorType
    message: str
    stack: Optional[str] = None
    url: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    context: Optional[Dict[str, Any]] = None


class NetworkRequest(_Model):
    id: str = Field(default_factory=new_id)
    test_run_id: str = Field(alias="testRunId")
    request_id: str = Field(alias="requestId")
    method: str
    url: str
    resource_type: str = Field(alias="resourceType")
    status: Optional[int] = None
    status_text: Optional[str] = Field(default=None, alias="statusText")
    timestamp: datetime = Field(default_factory=utcnow)
    duration: Optional[int] = None
    request_size: Optional[int] = Field(default=None, alias="requestSize")
    response_size: Optional[int] = Field(default=None, alias="responseSize")
    failed: bool = False
    error_text: Optional[str] = Field(default=None, alias="errorText")
