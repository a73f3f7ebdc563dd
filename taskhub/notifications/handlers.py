"""Handlers for notification jobs."""

from typing import Any, Dict

import structlog

from taskhub.core.exceptions import NotificationError
from taskhub.notifications.email import EmailMessage, EmailSender
from taskhub.tasks.models import NotificationType
from taskhub.tasks.payloads import (
    NotificationPayload,
    PasswordResetPayload,
    PaymentSuccessPayload,
    TaskCompletedPayload,
    WelcomePayload,
)
from taskhub.tasks.registry import HandlerRegistry

logger = structlog.get_logger(__name__)

TASK_TYPE_NAMES = {
    "text-gen": "文本生成",
    "image-gen": "图片生成",
    "image-understand": "图片理解",
    "document-process": "文档处理",
    "excel-process": "Excel操作",
}


def compose_message(payload: NotificationPayload) -> EmailMessage:
    """Build the plain-text email for a notification payload."""
    match payload:
        case TaskCompletedPayload(succeeded=True):
            subject = "任务完成"
            body = (
                f"您的AI任务已处理完成。\n"
                f"任务ID: {payload.task_id}\n"
                f"任务类型: {TASK_TYPE_NAMES.get(payload.task_type, payload.task_type)}\n"
                f"结果摘要: {payload.summary}"
            )
        case TaskCompletedPayload():
            subject = "任务失败"
            body = (
                f"您的AI任务处理失败。\n"
                f"任务ID: {payload.task_id}\n"
                f"任务类型: {TASK_TYPE_NAMES.get(payload.task_type, payload.task_type)}\n"
                f"失败原因: {payload.summary}"
            )
        case WelcomePayload():
            subject = "欢迎加入 AI Service Platform"
            body = f"{payload.username}，欢迎加入 AI Service Platform！"
        case PasswordResetPayload():
            subject = "密码重置"
            body = f"请通过以下链接重置密码：\n{payload.reset_link}"
        case PaymentSuccessPayload():
            subject = "支付成功"
            body = (
                f"您的订单已支付成功。\n"
                f"订单号: {payload.order_no}\n"
                f"支付金额: ¥{payload.amount:.2f}\n"
                f"产品名称: {payload.product_name}"
            )
        case _:
            raise NotificationError(
                f"Unsupported notification payload: {type(payload).__name__}",
                recipient=getattr(payload, "to", None),
            )

    return EmailMessage(to=payload.to, subject=subject, body=body)


async def deliver_notification(sender: EmailSender, payload: NotificationPayload) -> Dict[str, Any]:
    """Compose and send the email for a notification job."""
    message = compose_message(payload)
    result = await sender.send(message)
    logger.info("notification_delivered", kind=payload.kind, to=message.to)
    return result


def register_notification_handlers(registry: HandlerRegistry, sender: EmailSender) -> None:
    """Register the email handler for every notification type."""

    async def handle_notification(payload: NotificationPayload) -> Dict[str, Any]:
        return await deliver_notification(sender, payload)

    for notification_type in NotificationType:
        registry.register(notification_type, handle_notification)
