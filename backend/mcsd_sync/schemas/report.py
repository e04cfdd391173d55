"""Pydantic schemas for update reports."""

from pydantic import BaseModel, ConfigDict, Field, model_serializer


class DirectoryUpdateReport(BaseModel):
    """Outcome of synchronizing one root directory.

    A populated ``error`` means the directory failed; ``warnings`` list
    non-fatal anomalies. Both are left out of the JSON when empty.
    """

    model_config = ConfigDict(frozen=True)

    created: int = 0
    updated: int = 0
    deleted: int = 0
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None

    @model_serializer(mode="wrap")
    def omit_empty(self, handler):
        data = handler(self)
        if not data.get("warnings"):
            data.pop("warnings", None)
        if data.get("error") is None:
            data.pop("error", None)
        return data


# Directory base URL -> report, one entry per configured root directory
UpdateReport = dict[str, DirectoryUpdateReport]
