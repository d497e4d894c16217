"""
Codificación y decodificación de QR de tickets

El QR siempre codifica la URL canónica {APP_BASE_URL}/validate/{reference}.
La decodificación es pura: recibe pixeles y devuelve un DecodeResult, nunca
lanza excepción por "no hay QR", solo por buffers mal formados.
"""
import base64
import io
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import List, Optional, Union

import cv2
import numpy as np
import qrcode
import qrcode.exceptions
import qrcode.image.svg

from app.core.config import settings
from services.ticket_validation.models.scan import DecodeResult, ScanStatus
from shared.utils.errors import MalformedPixelBufferError

logger = logging.getLogger(__name__)

ERROR_CORRECTION_LEVELS = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}

# "/verify/" era la ruta de validación en versiones anteriores del frontend
VALIDATION_SEGMENTS = ("/validate/", "/verify/")

BRAND_COLOR = "#4f46e5"

_REFERENCE_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_REFERENCE_RANDOM_LENGTH = 9


def generate_reference(prefix: Optional[str] = None) -> str:
    """Generar referencia TICKET-<epoch ms>-<9 caracteres base36>"""
    prefix = prefix if prefix is not None else settings.TICKET_REFERENCE_PREFIX
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(_REFERENCE_RANDOM_LENGTH))
    return f"{prefix}{int(time.time() * 1000)}-{suffix}"


def _bare_reference_pattern(prefix: str) -> "re.Pattern":
    return re.compile(rf"^#?{re.escape(prefix)}[A-Z0-9]+(?:-[A-Z0-9]+)*$")


def extract_reference(payload: str, prefix: Optional[str] = None) -> Optional[str]:
    """
    Obtener la referencia desde el texto de un QR

    - URL con "/validate/": todo lo que sigue al segmento
    - Referencia suelta (TICKET-... o #TICKET-...): se usa tal cual, sin '#'
    - Cualquier otra cosa: None (QR encontrado pero sin referencia)
    """
    if not payload:
        return None

    text = payload.strip()
    for segment in VALIDATION_SEGMENTS:
        position = text.find(segment)
        if position != -1:
            candidate = text[position + len(segment):]
            candidate = candidate.split("?", 1)[0].split("#", 1)[0].strip("/")
            return candidate or None

    prefix = prefix if prefix is not None else settings.TICKET_REFERENCE_PREFIX
    if _bare_reference_pattern(prefix).match(text):
        return text.lstrip("#")
    return None


def _as_grayscale(pixels: Union[bytes, bytearray, memoryview, np.ndarray], width: int, height: int) -> np.ndarray:
    """Convertir un buffer (gris, RGB o RGBA) a una matriz uint8 en escala de grises"""
    if width <= 0 or height <= 0:
        raise MalformedPixelBufferError(f"Dimensiones inválidas: {width}x{height}")

    if isinstance(pixels, np.ndarray):
        frame = pixels
        if frame.ndim not in (2, 3) or frame.shape[0] != height or frame.shape[1] != width:
            raise MalformedPixelBufferError(
                f"Forma {frame.shape} no coincide con {width}x{height}"
            )
        if frame.dtype != np.uint8:
            frame = frame.astype(np.uint8)
    else:
        size = len(pixels)
        channels, remainder = divmod(size, width * height)
        if remainder or channels not in (1, 3, 4):
            raise MalformedPixelBufferError(
                f"Buffer de {size} bytes no corresponde a {width}x{height} con 1, 3 o 4 canales"
            )
        frame = np.frombuffer(bytes(pixels), dtype=np.uint8)
        frame = frame.reshape((height, width)) if channels == 1 else frame.reshape((height, width, channels))

    if frame.ndim == 2:
        return np.ascontiguousarray(frame)

    channels = frame.shape[2]
    if channels == 1:
        return np.ascontiguousarray(frame[:, :, 0])
    if channels == 3:
        return cv2.cvtColor(np.ascontiguousarray(frame), cv2.COLOR_RGB2GRAY)
    if channels == 4:
        return cv2.cvtColor(np.ascontiguousarray(frame), cv2.COLOR_RGBA2GRAY)
    raise MalformedPixelBufferError(f"Cantidad de canales no soportada: {channels}")


@dataclass
class QRArtifact:
    """QR renderizado en los formatos que usan pantalla, PDF y email"""
    reference: str
    payload: str
    png: bytes
    svg: str

    @property
    def png_base64(self) -> str:
        return base64.b64encode(self.png).decode("utf-8")

    @property
    def data_uri(self) -> str:
        return f"data:image/png;base64,{self.png_base64}"


@dataclass
class BatchEncodeItem:
    reference: str
    artifact: Optional[QRArtifact] = None
    error: Optional[str] = None


class QRCodec:
    """Encode/decode de un único QR por imagen"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        error_correction: Optional[str] = None,
        box_size: Optional[int] = None,
        border: Optional[int] = None,
    ):
        self.base_url = (base_url or settings.APP_BASE_URL).rstrip("/")
        self.error_correction = (error_correction or settings.QR_ERROR_CORRECTION).upper()
        self.box_size = box_size or settings.QR_BOX_SIZE
        self.border = border if border is not None else settings.QR_BORDER
        self._detector = cv2.QRCodeDetector()

    def build_validation_url(self, reference: str) -> str:
        return f"{self.base_url}/validate/{reference}"

    def _build(self, payload: str, error_correction: str) -> qrcode.QRCode:
        level = ERROR_CORRECTION_LEVELS.get(error_correction.upper())
        if level is None:
            raise ValueError(f"Nivel de corrección de errores inválido: {error_correction}")

        qr = qrcode.QRCode(
            version=None,
            error_correction=level,
            box_size=self.box_size,
            border=self.border,
        )
        qr.add_data(payload)
        qr.make(fit=True)
        return qr

    def encode(
        self,
        reference: str,
        error_correction: Optional[str] = None,
        fill_color: str = "black",
        back_color: str = "white",
    ) -> QRArtifact:
        """
        Renderizar el QR de una referencia

        Args:
            reference: Referencia del ticket
            error_correction: L, M, Q o H (default: QR_ERROR_CORRECTION)
            fill_color: Color de los módulos
            back_color: Color de fondo

        Returns:
            QRArtifact con PNG, data URI y SVG de la misma URL
        """
        if not reference:
            raise ValueError("reference está vacío, no se puede generar QR")

        payload = self.build_validation_url(reference)
        qr = self._build(payload, error_correction or self.error_correction)

        img = qr.make_image(fill_color=fill_color, back_color=back_color)
        img_buffer = io.BytesIO()
        img.save(img_buffer, format="PNG")
        png_bytes = img_buffer.getvalue()

        svg_buffer = io.BytesIO()
        qr.make_image(image_factory=qrcode.image.svg.SvgPathImage).save(svg_buffer)
        svg = svg_buffer.getvalue().decode("utf-8")

        logger.debug(f"QR generado para {reference} (PNG {len(png_bytes)} bytes)")
        return QRArtifact(reference=reference, payload=payload, png=png_bytes, svg=svg)

    def encode_branded(self, reference: str) -> QRArtifact:
        """QR con colores de marca y corrección alta para superponer un logo"""
        return self.encode(
            reference,
            error_correction=settings.QR_BRANDED_ERROR_CORRECTION,
            fill_color=BRAND_COLOR,
            back_color="white",
        )

    def encode_batch(self, references: List[str], branded: bool = False) -> List[BatchEncodeItem]:
        """Generar QRs para varias referencias; un fallo no detiene el resto"""
        results = []
        for reference in references:
            try:
                artifact = self.encode_branded(reference) if branded else self.encode(reference)
                results.append(BatchEncodeItem(reference=reference, artifact=artifact))
            except (ValueError, qrcode.exceptions.DataOverflowError) as e:
                logger.warning(f"No se pudo generar QR para {reference!r}: {e}")
                results.append(BatchEncodeItem(reference=reference, error=str(e)))
        return results

    def _detect(self, gray: np.ndarray) -> Optional[str]:
        text, _points, _ = self._detector.detectAndDecode(gray)
        return text or None

    def decode(self, pixels: Union[bytes, bytearray, memoryview, np.ndarray], width: int, height: int) -> DecodeResult:
        """
        Decodificar un QR desde un buffer de pixeles

        Intenta primero oscuro sobre claro y luego la imagen invertida, para que
        un QR claro sobre fondo oscuro decodifique igual.

        Raises:
            MalformedPixelBufferError: si el buffer no coincide con width x height
        """
        gray = _as_grayscale(pixels, width, height)

        payload = self._detect(gray)
        if payload is None:
            payload = self._detect(cv2.bitwise_not(gray))
        if payload is None:
            return DecodeResult(status=ScanStatus.NOT_FOUND)

        reference = extract_reference(payload)
        if reference is None:
            logger.info(f"QR detectado sin referencia reconocible: {payload[:80]!r}")
            return DecodeResult(status=ScanStatus.UNRECOVERABLE, payload=payload)

        return DecodeResult(status=ScanStatus.FOUND, reference=reference, payload=payload)
