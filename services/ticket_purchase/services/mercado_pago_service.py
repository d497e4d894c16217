"""Servicio de integración con Mercado Pago"""
import hashlib
import hmac
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

import mercadopago

from app.core.config import settings
from shared.utils.errors import PaymentGatewayError

logger = logging.getLogger(__name__)

# Estados de pago de Mercado Pago -> resultado para la pasarela
SUCCEEDED_STATUSES = {"approved"}
# "rejected" no cierra la preferencia: el comprador puede reintentar con otra tarjeta
FAILED_STATUSES = {"cancelled", "refunded", "charged_back"}


class MercadoPagoService:
    """Servicio para manejar pagos con Mercado Pago"""

    def __init__(self, access_token: Optional[str] = None, sdk=None):
        access_token = access_token or settings.MERCADOPAGO_ACCESS_TOKEN
        if not access_token and sdk is None:
            raise ValueError(
                "MERCADOPAGO_ACCESS_TOKEN no configurado. "
                "Por favor, configura esta variable en tu archivo .env."
            )

        self.access_token = access_token
        self.sdk = sdk or mercadopago.SDK(access_token)
        self.webhook_secret = settings.MERCADOPAGO_WEBHOOK_SECRET
        self.environment = settings.MERCADOPAGO_ENVIRONMENT

        token_is_test = bool(access_token) and access_token.startswith("TEST-")
        if access_token and token_is_test != (self.environment == "sandbox"):
            logger.warning(
                f"Token de Mercado Pago ({'TEST' if token_is_test else 'APP_USR'}) "
                f"no coincide con MERCADOPAGO_ENVIRONMENT={self.environment}"
            )

        self.base_url = settings.APP_BASE_URL.rstrip("/")
        # URL para webhooks: usar ngrok si está disponible, sino el backend local
        self.webhook_base_url = (settings.NGROK_URL or self.base_url.replace(":3000", ":8000")).rstrip("/")

    def _back_urls(self, session_ref: str) -> Dict[str, str]:
        base = settings.NGROK_URL.rstrip("/") if settings.NGROK_URL else self.base_url
        return {
            "success": f"{base}/payment/success?session={session_ref}",
            "failure": f"{base}/payment/failure?session={session_ref}",
            "pending": f"{base}/payment/pending?session={session_ref}",
        }

    def create_preference(
        self,
        session_ref: str,
        title: str,
        amount: float,
        currency: str = "USD",
        description: str = "",
        payer_email: Optional[str] = None,
        payer_name: Optional[str] = None,
        metadata: Optional[Dict] = None,
        expires_in_minutes: int = 30,
    ) -> Dict:
        """
        Crear preferencia de pago en Mercado Pago

        Args:
            session_ref: Referencia de la sesión de pago (external_reference)
            title: Título del item
            amount: Monto total
            currency: Moneda (USD, CLP, etc.)
            description: Descripción del item
            payer_email: Email del pagador
            payer_name: Nombre del titular
            metadata: Datos de conciliación (evento, titular, email)
            expires_in_minutes: Vigencia de la preferencia

        Returns:
            dict con preference_id y payment_link

        Raises:
            PaymentGatewayError: si Mercado Pago no responde o rechaza la preferencia
        """
        now = datetime.utcnow()
        preference_data = {
            "items": [{
                "id": f"{session_ref}_item_0",
                "title": title,
                "description": description,
                "quantity": 1,
                "currency_id": currency,
                "unit_price": float(amount),
            }],
            "back_urls": self._back_urls(session_ref),
            "external_reference": session_ref,
            "notification_url": f"{self.webhook_base_url}/api/v1/payments/webhook",
            "metadata": metadata or {},
            "expires": True,
            "expiration_date_from": now.isoformat(),
            "expiration_date_to": (now + timedelta(minutes=expires_in_minutes)).isoformat(),
            "binary_mode": False,
        }

        if payer_email:
            payer_data = {"email": payer_email}
            if payer_name:
                name_parts = payer_name.strip().split(maxsplit=1)
                payer_data["first_name"] = name_parts[0]
                payer_data["last_name"] = name_parts[1] if len(name_parts) > 1 else name_parts[0]
            preference_data["payer"] = payer_data

        # auto_return solo funciona con URLs HTTPS
        if preference_data["back_urls"]["success"].startswith("https://"):
            preference_data["auto_return"] = "approved"

        try:
            preference_response = self.sdk.preference().create(preference_data)
        except Exception as e:
            logger.error(f"Error al comunicarse con Mercado Pago: {e}")
            raise PaymentGatewayError(f"Error al comunicarse con Mercado Pago: {e}") from e

        if preference_response.get("status") != 201:
            error_status = preference_response.get("status", "N/A")
            error_response = preference_response.get("response", {}) or {}
            error_message = error_response.get("message") if isinstance(error_response, dict) else None
            if error_status == 401:
                error_message = "Token de Mercado Pago inválido o expirado (401 Unauthorized)"
            elif error_status == 403:
                error_message = "Token sin permisos suficientes (403 Forbidden)"
            logger.error(f"Error creando preferencia (status {error_status}): {error_message}")
            raise PaymentGatewayError(f"Error creando preferencia: {error_message or 'Error desconocido'}")

        preference = preference_response["response"]
        if self.environment == "sandbox":
            payment_link = preference.get("sandbox_init_point") or preference.get("init_point")
        else:
            payment_link = preference.get("init_point")

        if not payment_link:
            raise PaymentGatewayError(
                f"No se pudo obtener el link de pago de la preferencia {preference.get('id')}"
            )

        logger.info(f"Preferencia {preference.get('id')} creada para sesión {session_ref}")
        return {
            "preference_id": preference["id"],
            "payment_link": payment_link,
        }

    def verify_payment(self, payment_id: str) -> Dict:
        """Obtener un pago por ID"""
        try:
            payment_response = self.sdk.payment().get(payment_id)
        except Exception as e:
            raise PaymentGatewayError(f"Error obteniendo pago {payment_id}: {e}") from e

        if payment_response.get("status") != 200:
            raise PaymentGatewayError(
                f"Error obteniendo pago {payment_id}: status {payment_response.get('status')}"
            )
        return payment_response["response"]

    def verify_webhook(
        self,
        data: Dict,
        signature: Optional[str] = None,
        request_id: Optional[str] = None,
        query_params: Optional[Dict] = None
    ) -> bool:
        """
        Verificar webhook de Mercado Pago usando HMAC SHA256

        Args:
            data: Body del webhook
            signature: Header x-signature (ts=...,v1=...)
            request_id: Header x-request-id
            query_params: Query params de la URL (data.id, type)

        Returns:
            True si la firma es válida
        """
        # En desarrollo, si no hay secret configurado, permitir sin verificación
        if not self.webhook_secret:
            logger.warning("Webhook secret no configurado, saltando verificación (solo desarrollo)")
            return True

        if not signature or not request_id:
            logger.warning("Webhook sin x-signature o x-request-id")
            return False

        # Formato: ts=1742505638683,v1=ced36ab6...
        ts = None
        v1 = None
        for part in signature.split(","):
            key_value = part.split("=", 1)
            if len(key_value) == 2:
                key, value = key_value[0].strip(), key_value[1].strip()
                if key == "ts":
                    ts = value
                elif key == "v1":
                    v1 = value

        if not ts or not v1:
            logger.warning("No se pudo extraer ts o v1 del x-signature")
            return False

        data_id = None
        if query_params:
            data_id = query_params.get("data.id") or query_params.get("data_id")
        if not data_id and isinstance(data.get("data"), dict) and data["data"].get("id"):
            data_id = str(data["data"]["id"])
        if not data_id:
            logger.warning("No se encontró data.id en query params ni en body")
            return False

        # Formato: id:[data.id];request-id:[x-request-id];ts:[ts];
        manifest = f"id:{str(data_id).lower()};request-id:{request_id};ts:{ts};"
        calculated_signature = hmac.new(
            self.webhook_secret.encode(),
            msg=manifest.encode(),
            digestmod=hashlib.sha256
        ).hexdigest()

        if hmac.compare_digest(calculated_signature, v1):
            return True

        logger.warning(f"Firma de webhook no coincide (request-id {request_id})")
        return False
