# regateo/tasks/notifications.py
from celery import shared_task
import requests
import logging
from typing import Any, Dict, Optional
from regateo.core.config import settings

logger = logging.getLogger(__name__)

def _post_email(payload: Dict[str, Any]) -> bool:
    """Entrega el correo al servicio externo; lanza requests.RequestException si falla"""
    if not settings.EMAIL_SERVICE_URL:
        logger.warning("EMAIL_SERVICE_URL no configurado, correo descartado")
        return False

    response = requests.post(
        settings.EMAIL_SERVICE_URL,
        json=payload,
        timeout=settings.EMAIL_SERVICE_TIMEOUT,
    )
    response.raise_for_status()
    return True

@shared_task(bind=True, max_retries=5, name="regateo.tasks.notifications.send_offer_email_task")
def send_offer_email_task(self, recipient_id: str, offer_id: str, tool_title: str,
                          price: float, currency: str, message: Optional[str] = None):
    """
    Avisa por correo al vendedor de una oferta nueva
    """
    payload = {
        "template": "offer_received",
        "recipient_id": recipient_id,
        "data": {
            "offer_id": offer_id,
            "tool_title": tool_title,
            "price": price,
            "currency": currency,
            "message": message,
            "link": f"/messages/{offer_id}",
        }
    }
    try:
        sent = _post_email(payload)
        if sent:
            logger.info(f"Correo de oferta {offer_id} enviado a {recipient_id}")
        return sent
    except requests.RequestException as e:
        logger.error(f"Error al enviar correo de oferta {offer_id}: {str(e)}")
        # Reintento con backoff exponencial
        retry_delay = 60 * (2 ** self.request.retries)  # 60s, 120s, 240s, etc.
        raise self.retry(exc=e, countdown=retry_delay)

@shared_task(bind=True, max_retries=5, name="regateo.tasks.notifications.send_message_email_task")
def send_message_email_task(self, recipient_id: str, sender_id: str, conversation_id: str, text: str):
    """
    Avisa por correo de un mensaje directo nuevo
    """
    payload = {
        "template": "message_received",
        "recipient_id": recipient_id,
        "data": {
            "sender_id": sender_id,
            "conversation_id": conversation_id,
            "preview": text[:settings.LAST_MESSAGE_PREVIEW_LENGTH],
            "link": f"/messages/{conversation_id}",
        }
    }
    try:
        sent = _post_email(payload)
        if sent:
            logger.info(f"Correo de mensaje en {conversation_id} enviado a {recipient_id}")
        return sent
    except requests.RequestException as e:
        logger.error(f"Error al enviar correo de mensaje: {str(e)}")
        retry_delay = 60 * (2 ** self.request.retries)
        raise self.retry(exc=e, countdown=retry_delay)
