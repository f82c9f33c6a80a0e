from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ReviewCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(alias="projectId")
    profile_id: str = Field(alias="profileId")
    diff_content: str = Field(alias="diffContent")
    file_path: Optional[str] = Field(default=None, alias="filePath")
    language: Optional[str] = None
    priority: int = 0


class FeedbackCreate(BaseModel):
    accepted: bool
    helpful: Optional[bool] = None
    comment: Optional[str] = None
