"""
Storage actions - artifact upload, delete and listing keyed as ``r2:<op>``.

They go through the run's storage service, the same one screenshots use.
"""

import base64
import binascii
import mimetypes
from typing import Any, Literal, Optional

import structlog
from pydantic import Field, model_validator

from ..core.errors import ActionError, FrameworkError
from ..engine.context import ExecutionFrame
from ..engine.registry import ActionSchema, PluginAction

logger = structlog.get_logger()

DEFAULT_CONTENT_TYPE = "text/plain"


def guess_content_type(key: str) -> str:
    content_type, _ = mimetypes.guess_type(key)
    return content_type or DEFAULT_CONTENT_TYPE


class StorageAction(PluginAction):
    """Base for actions that need the run's storage service."""

    def storage(self, frame: ExecutionFrame) -> Any:
        storage = frame.run.storage
        if storage is None:
            raise ActionError(f"{self.action_type} requires a storage service",
                              action_id=frame.action_id, action_type=self.action_type)
        return storage

    def wrap_error(self, error: Exception, params: Any) -> FrameworkError:
        return ActionError(f"{self.action_type} failed: {error}",
                           action_type=self.action_type)


class UploadSchema(ActionSchema):
    key: str = Field(min_length=1)
    content: str
    encoding: Literal["text", "base64"] = "text"
    content_type: Optional[str] = None

    @model_validator(mode="after")
    def check_content(self) -> "UploadSchema":
        if self.encoding == "base64":
            try:
                base64.b64decode(self.content, validate=True)
            except binascii.Error:
                raise ValueError("requires base64 'content' when encoding is base64")
        return self

    def payload(self) -> bytes:
        if self.encoding == "base64":
            return base64.b64decode(self.content)
        return self.content.encode()


class UploadAction(StorageAction):
    action_type = "r2:upload"
    schema = UploadSchema

    async def run(self, params: UploadSchema, frame: ExecutionFrame) -> str:
        storage = self.storage(frame)
        data = params.payload()
        content_type = params.content_type or guess_content_type(params.key)
        frame.run.logger.info("storage_upload", key=params.key,
                              content_type=content_type, size=len(data))

        url = await storage.upload_file(params.key, data, content_type)
        frame.emit_output_file(url)
        return f"Successfully uploaded file to storage: {params.key}"


class DeleteSchema(ActionSchema):
    key: str = Field(min_length=1)


class DeleteAction(StorageAction):
    action_type = "r2:delete"
    schema = DeleteSchema

    async def run(self, params: DeleteSchema, frame: ExecutionFrame) -> str:
        await self.storage(frame).delete_file(params.key)
        frame.run.logger.info("storage_delete", key=params.key)
        return f"Successfully deleted file from storage: {params.key}"


class ListSchema(ActionSchema):
    prefix: str = ""
    save_as: Optional[str] = None
    scope: Literal["local", "global"] = "local"


class ListAction(StorageAction):
    """Lists stored keys under a prefix, optionally saving them as a runtime variable."""

    action_type = "r2:list"
    schema = ListSchema

    def __init__(self):
        self.keys: list[str] = []

    async def run(self, params: ListSchema, frame: ExecutionFrame) -> str:
        self.keys = await self.storage(frame).list_files(params.prefix)
        if params.save_as:
            frame.variables.set_runtime(params.save_as, list(self.keys), params.scope)
        return f"Successfully listed {len(self.keys)} files with prefix: {params.prefix}"

    def event_data(self, params: Any) -> Optional[dict[str, Any]]:
        return {"files": self.keys}


STORAGE_ACTIONS: list[type[StorageAction]] = [
    UploadAction,
    DeleteAction,
    ListAction,
]
