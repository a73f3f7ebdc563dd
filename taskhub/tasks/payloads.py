"""Typed job payloads.

Every job type carries its own payload model. The ``kind`` field is the
discriminator of the payload unions and always equals the job's ``type``.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    """A single chat message sent to the text model."""

    role: Literal["system", "user", "assistant"] = "user"
    content: str


class TextGenPayload(BaseModel):
    """Free-form text generation from a chat transcript."""

    kind: Literal["text-gen"] = "text-gen"
    messages: list[ChatMessage] = Field(min_length=1)
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)


class ImageGenPayload(BaseModel):
    """Text-to-image generation."""

    kind: Literal["image-gen"] = "image-gen"
    prompt: str = Field(min_length=1)
    size: str = "1024x1024"
    num: int = Field(default=1, ge=1, le=4)


class ImageUnderstandPayload(BaseModel):
    """Question answering over an image (URL or data URI)."""

    kind: Literal["image-understand"] = "image-understand"
    image: str = Field(min_length=1)
    prompt: str = Field(min_length=1)


class DocumentProcessPayload(BaseModel):
    """Run an instruction over the text content of a document."""

    kind: Literal["document-process"] = "document-process"
    content: str = Field(min_length=1)
    task: str = Field(min_length=1)


class ExcelProcessPayload(BaseModel):
    """Run an instruction over tabular data."""

    kind: Literal["excel-process"] = "excel-process"
    instruction: str = Field(min_length=1)
    data: Any | None = None


class TaskCompletedPayload(BaseModel):
    """Tell a user that one of their AI tasks has finished."""

    kind: Literal["task-completed"] = "task-completed"
    to: str = Field(min_length=3)
    task_id: str
    task_type: str
    summary: str = ""
    succeeded: bool = True


class WelcomePayload(BaseModel):
    kind: Literal["welcome"] = "welcome"
    to: str = Field(min_length=3)
    username: str


class PasswordResetPayload(BaseModel):
    kind: Literal["password-reset"] = "password-reset"
    to: str = Field(min_length=3)
    reset_link: str


class PaymentSuccessPayload(BaseModel):
    kind: Literal["payment-success"] = "payment-success"
    to: str = Field(min_length=3)
    order_no: str
    amount: float = Field(ge=0)
    product_name: str


AITaskPayload = Annotated[
    Union[
        TextGenPayload,
        ImageGenPayload,
        ImageUnderstandPayload,
        DocumentProcessPayload,
        ExcelProcessPayload,
    ],
    Field(discriminator="kind"),
]

NotificationPayload = Annotated[
    Union[
        TaskCompletedPayload,
        WelcomePayload,
        PasswordResetPayload,
        PaymentSuccessPayload,
    ],
    Field(discriminator="kind"),
]

JobPayload = Annotated[
    Union[
        TextGenPayload,
        ImageGenPayload,
        ImageUnderstandPayload,
        DocumentProcessPayload,
        ExcelProcessPayload,
        TaskCompletedPayload,
        WelcomePayload,
        PasswordResetPayload,
        PaymentSuccessPayload,
    ],
    Field(discriminator="kind"),
]
