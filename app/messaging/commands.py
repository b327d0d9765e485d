"""Caller commands accepted on the message channel, tagged by ``action``."""

from typing import Annotated, Any, Dict, Literal, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter

from app.common.models import ScrapeParams
from app.storage.models import SessionFilters


class StartScrapingCommand(BaseModel):
    action: Literal["start_scraping"] = "start_scraping"
    params: ScrapeParams


class StopScrapingCommand(BaseModel):
    action: Literal["stop_scraping"] = "stop_scraping"


class GetStatusCommand(BaseModel):
    action: Literal["get_status"] = "get_status"


class GetDataCommand(BaseModel):
    action: Literal["get_data"] = "get_data"
    filters: SessionFilters = Field(default_factory=SessionFilters)
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1)


class ExportCommand(BaseModel):
    action: Literal["export"] = "export"
    format: str = "json"
    filters: SessionFilters = Field(default_factory=SessionFilters)
    include_raw_sessions: bool = True


class DeleteCommand(BaseModel):
    action: Literal["delete"] = "delete"
    filters: SessionFilters = Field(default_factory=SessionFilters)
    delete_all: bool = Field(default=False, validation_alias=AliasChoices("delete_all", "all"))


class GetSettingsCommand(BaseModel):
    action: Literal["get_settings"] = "get_settings"


class UpdateSettingsCommand(BaseModel):
    action: Literal["update_settings"] = "update_settings"
    settings: Dict[str, Any]


COMMAND_TYPES = (
    StartScrapingCommand,
    StopScrapingCommand,
    GetStatusCommand,
    GetDataCommand,
    ExportCommand,
    DeleteCommand,
    GetSettingsCommand,
    UpdateSettingsCommand,
)
COMMAND_ACTIONS = frozenset(cls.model_fields["action"].default for cls in COMMAND_TYPES)

Command = Annotated[Union[COMMAND_TYPES], Field(discriminator="action")]

command_adapter = TypeAdapter(Command)
