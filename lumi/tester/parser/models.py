from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from lumi.tester.parser.commands import Command


class FlowHeader(BaseModel):
    """Keys allowed before the `---` separator of a flow file."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    app_id: str | None = None
    url: str | None = None
    platform: str | None = None
    env: dict[str, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("env", "vars", "var")
    )
    data: str | None = None
    default_timeout: int | None = None
    tags: list[str] = Field(default_factory=list)
    speed: str | None = None
    browser: str | None = None
    close_when_finish: bool | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return value

    @field_validator("platform", mode="before")
    @classmethod
    def _normalize_platform(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class TestFlow(BaseModel):
    __test__ = False

    name: str
    path: Path | None = None
    header: FlowHeader = Field(default_factory=FlowHeader)
    commands: list[Command] = Field(default_factory=list)

    @property
    def app_id(self) -> str | None:
        return self.header.app_id

    @property
    def url(self) -> str | None:
        return self.header.url

    @property
    def platform(self) -> str:
        return self.header.platform or "android"

    @property
    def tags(self) -> list[str]:
        return self.header.tags

    @property
    def base_dir(self) -> Path:
        return self.path.parent if self.path else Path.cwd()
