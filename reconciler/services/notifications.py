# reconciler/services/notifications.py
"""Transactional emails sent through the Resend HTTP API."""
import logging
from html import escape
from typing import Optional

import requests

from reconciler.config import settings
from reconciler.errors import NotificationError

logger = logging.getLogger("reconciler.notifications")

RESEND_URL = "https://api.resend.com/emails"


def send_email(to_email: str, subject: str, html: str, timeout: int = 10) -> bool:
    """
    Hand one email to the provider. Returns False (and warns) when no API key
    is configured; raises NotificationError when the provider refuses it.
    """
    if not settings.resend_api_key:
        logger.warning("RESEND_API_KEY not set; skipping email", extra={"subject": subject})
        return False

    try:
        resp = requests.post(
            RESEND_URL,
            headers={
                "Authorization": f"Bearer {settings.resend_api_key}",
                "Content-Type": "application/json",
            },
            json={"from": settings.email_from, "to": [to_email], "subject": subject, "html": html},
            timeout=timeout,
        )
    except requests.RequestException as e:
        raise NotificationError(f"Email request failed: {e}") from e

    if not 200 <= resp.status_code < 300:
        raise NotificationError(f"Email provider returned {resp.status_code}: {resp.text[:200]}")
    return True


def send_purchase_confirmation(customer_email: str, customer_name: str, product_name: str,
                               order_id: str, amount: str, currency: str) -> bool:
    html = (
        f"<p>Olá {escape(customer_name or '')},</p>"
        f"<p>A sua compra de <strong>{escape(product_name)}</strong> foi confirmada.</p>"
        f"<p>Pedido: {escape(order_id)}<br>Valor: {escape(amount)} {escape(currency)}</p>"
    )
    return send_email(customer_email, f"Compra confirmada - {product_name}", html)


def send_seller_sale_notification(seller_email: str, seller_name: Optional[str], product_name: str,
                                  order_id: str, customer_name: str, amount: str, currency: str) -> bool:
    html = (
        f"<p>Olá {escape(seller_name or '')},</p>"
        f"<p>Nova venda de <strong>{escape(product_name)}</strong>.</p>"
        f"<p>Cliente: {escape(customer_name or '')}<br>Pedido: {escape(order_id)}"
        f"<br>Valor: {escape(amount)} {escape(currency)}</p>"
    )
    return send_email(seller_email, f"Nova venda: {product_name}", html)


def send_member_access(student_email: str, student_name: str, member_area_name: str,
                       member_area_url: str, seller_name: Optional[str],
                       temporary_password: Optional[str] = None) -> bool:
    credentials = ""
    if temporary_password:
        credentials = (
            f"<p>Email: {escape(student_email)}<br>"
            f"Senha temporária: <code>{escape(temporary_password)}</code></p>"
        )
    html = (
        f"<p>Olá {escape(student_name or '')},</p>"
        f"<p>{escape(seller_name or 'O produtor')} liberou o seu acesso a "
        f"<strong>{escape(member_area_name)}</strong>.</p>"
        f"{credentials}"
        f"<p><a href=\"{escape(member_area_url)}\">Aceder à área de membros</a></p>"
    )
    return send_email(student_email, f"Acesso liberado - {member_area_name}", html)


def send_multibanco_instructions(customer_email: str, customer_name: str, product_name: str,
                                 entity: str, reference: str, amount: str, currency: str,
                                 payment_intent_id: str) -> bool:
    html = (
        f"<p>Olá {escape(customer_name or '')},</p>"
        f"<p>Para concluir a compra de <strong>{escape(product_name)}</strong>, "
        f"pague por Multibanco:</p>"
        f"<p>Entidade: {escape(entity)}<br>Referência: {escape(reference)}"
        f"<br>Valor: {escape(amount)} {escape(currency)}</p>"
        f"<p><small>{escape(payment_intent_id)}</small></p>"
    )
    return send_email(customer_email, f"Dados de pagamento Multibanco - {product_name}", html)
