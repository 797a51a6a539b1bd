"""
API Schemas - Pydantic models for request validation

Request bodies use the camelCase field names the admin screen sends.
"""
from uuid import UUID

from pydantic import AliasChoices, AnyUrl, BaseModel, ConfigDict, Field, field_validator


class UpdateCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    repo_url: AnyUrl = Field(..., alias="repoUrl", description="Remote repository URL")
    branch: str = Field(..., min_length=1, max_length=100, description="Remote branch")

    @field_validator("branch")
    @classmethod
    def branch_is_not_an_option(cls, value: str) -> str:
        if value.startswith("-"):
            raise ValueError("Branch name must not start with '-'")
        return value


class UpdateExecuteRequest(UpdateCheckRequest):
    password: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("password", "adminPassword"),
        description="Admin password, checked again before the update starts",
    )


class RollbackRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    backup_id: UUID = Field(..., alias="backupId", description="Backup to restore")
    password: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("password", "adminPassword"),
        description="Admin password, checked again before the rollback starts",
    )
