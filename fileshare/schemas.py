from pydantic import BaseModel, ConfigDict, Field


class UploadResponse(BaseModel):
    id: str
    key: str


class FileInfoResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    file_size: str = Field(alias="fileSize")


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    trace_id: str | None = None
