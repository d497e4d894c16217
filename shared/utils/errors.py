"""Errores inesperados del pipeline de tickets

Los resultados esperados (ticket no encontrado, ya validado, QR no detectado...)
se devuelven como enums tipados; estas excepciones cubren solo condiciones
que el llamador debe manejar de forma genérica.
"""


class StoreUnavailableError(Exception):
    """Falla transitoria del almacén de tickets; la operación no se aplicó"""


class PaymentGatewayError(Exception):
    """Falla comunicándose con el procesador de pagos; el usuario puede reintentar"""


class MalformedPixelBufferError(ValueError):
    """El buffer de pixeles no coincide con las dimensiones indicadas"""


class DocumentRenderError(ValueError):
    """El documento subido no se pudo abrir o rasterizar"""


class ReferenceGenerationError(Exception):
    """Se agotaron los reintentos generando una referencia única"""


class DispatchError(Exception):
    """El proveedor de email no aceptó el envío"""
