"""
Adaptadores de captura: producen buffers de pixeles para el QRCodec

- LiveFrameSampler: muestrea frames de una cámara a intervalo fijo
- StaticImageAdapter: decodifica una imagen subida, una sola vez
- DocumentRasterizer: renderiza la primera página de un PDF en escalas descendentes
"""
import asyncio
import io
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Protocol

import cv2
import numpy as np
import pypdfium2 as pdfium
from PIL import Image, UnidentifiedImageError

from app.core.config import settings
from services.ticket_validation.models.scan import DecodeResult, ScanResult, ScanStatus
from services.ticket_validation.services.qr_codec import QRCodec
from shared.utils.errors import DocumentRenderError, MalformedPixelBufferError

logger = logging.getLogger(__name__)


def decode_frame(codec: QRCodec, frame: np.ndarray) -> DecodeResult:
    height, width = frame.shape[:2]
    return codec.decode(frame, width, height)


class CaptureAdapter(ABC):
    """Fuente de pixeles que comparte un único QRCodec"""

    def __init__(self, codec: Optional[QRCodec] = None):
        self.codec = codec or QRCodec()

    @abstractmethod
    async def scan(self) -> ScanResult:
        """Intentar obtener una referencia; NOT_FOUND si la fuente no tiene QR"""
        pass


class StaticImageAdapter(CaptureAdapter):
    def __init__(self, data: bytes, codec: Optional[QRCodec] = None):
        super().__init__(codec)
        self.data = data

    def _load(self) -> np.ndarray:
        try:
            with Image.open(io.BytesIO(self.data)) as image:
                return np.asarray(image.convert("RGB"))
        except (UnidentifiedImageError, OSError) as e:
            raise MalformedPixelBufferError(f"No se pudo leer la imagen: {e}") from e

    def _load_and_decode(self) -> DecodeResult:
        return decode_frame(self.codec, self._load())

    async def scan(self) -> ScanResult:
        result = await asyncio.to_thread(self._load_and_decode)
        return ScanResult(
            status=result.status,
            reference=result.reference,
            payload=result.payload,
            attempts=1,
        )


class DocumentRasterizer(CaptureAdapter):
    """
    Decodificar el QR embebido en un PDF

    Solo se renderiza la primera página, de la escala más alta a la más baja,
    deteniéndose en la primera referencia válida. Un QR ajeno no corta el
    descenso: a otra escala puede leerse el QR del ticket. Si ninguna escala
    da referencia pero alguna vio un QR, el resultado es UNRECOVERABLE, igual
    que en LiveFrameSampler. Los intentos son secuenciales.
    """

    def __init__(self, data: bytes, codec: Optional[QRCodec] = None, scales: Optional[List[float]] = None):
        super().__init__(codec)
        self.data = data
        self.scales = list(scales) if scales is not None else list(settings.PDF_RENDER_SCALES)

    def _open(self) -> pdfium.PdfDocument:
        try:
            document = pdfium.PdfDocument(self.data)
        except pdfium.PdfiumError as e:
            raise DocumentRenderError(f"No se pudo abrir el documento: {e}") from e
        if len(document) == 0:
            document.close()
            raise DocumentRenderError("El documento no tiene páginas")
        return document

    def _render_first_page(self, document: pdfium.PdfDocument, scale: float) -> np.ndarray:
        page = document[0]
        try:
            bitmap = page.render(scale=scale)
            return np.asarray(bitmap.to_pil().convert("RGB"))
        finally:
            page.close()

    def _render_and_decode(self, document: pdfium.PdfDocument, scale: float) -> DecodeResult:
        return decode_frame(self.codec, self._render_first_page(document, scale))

    async def scan(self) -> ScanResult:
        document = await asyncio.to_thread(self._open)
        attempts = 0
        unrecoverable: Optional[DecodeResult] = None
        try:
            for index, scale in enumerate(self.scales):
                attempts += 1
                result = await asyncio.to_thread(self._render_and_decode, document, scale)
                if result.found:
                    logger.info(f"QR en documento a escala {scale}x (intento {attempts})")
                    return ScanResult(
                        status=ScanStatus.FOUND,
                        reference=result.reference,
                        payload=result.payload,
                        attempts=attempts,
                        frame_index=index,
                        scale=scale,
                    )
                if result.status == ScanStatus.UNRECOVERABLE:
                    unrecoverable = result
                logger.debug(f"Sin referencia a escala {scale}x, probando siguiente escala")
        finally:
            document.close()

        if unrecoverable is not None:
            logger.info(f"QR sin referencia en el documento tras {attempts} escalas")
            return ScanResult(status=ScanStatus.UNRECOVERABLE, payload=unrecoverable.payload, attempts=attempts)
        logger.info(f"No se encontró QR en el documento tras {attempts} escalas")
        return ScanResult(status=ScanStatus.NOT_FOUND, attempts=attempts)


class FrameSource(Protocol):
    def read(self) -> Optional[np.ndarray]:
        """Frame RGB actual, o None si la fuente terminó"""
        ...

    def release(self) -> None:
        ...


class OpenCVFrameSource:
    """Cámara local vía cv2.VideoCapture"""

    def __init__(self, device_index: int = 0):
        self.device_index = device_index
        self._capture = cv2.VideoCapture(device_index)
        if not self._capture.isOpened():
            self._capture.release()
            raise RuntimeError(f"No se pudo abrir la cámara {device_index}")

    def read(self) -> Optional[np.ndarray]:
        ok, frame = self._capture.read()
        if not ok:
            return None
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)

    def release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info(f"Cámara {self.device_index} liberada")


class LiveFrameSampler(CaptureAdapter):
    """
    Muestrear frames a intervalo fijo hasta el primer QR válido

    Solo hay un decode en curso a la vez: los frames que llegan mientras tanto
    se descartan, no se encolan. Al terminar (éxito, fin de la fuente o stop())
    la fuente siempre se libera.
    """

    def __init__(
        self,
        source: FrameSource,
        codec: Optional[QRCodec] = None,
        interval_ms: Optional[int] = None,
    ):
        super().__init__(codec)
        self.source = source
        interval_ms = interval_ms if interval_ms is not None else settings.SCAN_FRAME_INTERVAL_MS
        self.interval = interval_ms / 1000.0
        self.frames_sampled = 0
        self.frames_dropped = 0
        self.attempts = 0
        self._stop_requested = asyncio.Event()

    def stop(self):
        """Detener el muestreo; no se toma ningún frame nuevo"""
        self._stop_requested.set()

    @property
    def stopped(self) -> bool:
        return self._stop_requested.is_set()

    async def _wait_or_stop(self, timeout: float):
        if timeout <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_requested.wait(), timeout)
        except asyncio.TimeoutError:
            pass

    async def scan(self) -> ScanResult:
        loop = asyncio.get_running_loop()
        pending: Optional[asyncio.Task] = None
        pending_index = 0
        unrecoverable: Optional[DecodeResult] = None

        try:
            while not self.stopped:
                tick_started = loop.time()

                # read() bloquea hasta el próximo frame de la cámara
                frame = await asyncio.to_thread(self.source.read)
                if frame is None or self.stopped:
                    break
                self.frames_sampled += 1

                if pending is None:
                    pending = asyncio.create_task(asyncio.to_thread(decode_frame, self.codec, frame))
                    pending_index = self.frames_sampled
                else:
                    self.frames_dropped += 1

                timeout = max(0.0, self.interval - (loop.time() - tick_started))
                done, _ = await asyncio.wait({pending}, timeout=timeout)
                if pending in done:
                    result = pending.result()
                    pending = None
                    self.attempts += 1
                    if result.found:
                        logger.info(f"QR detectado en frame {pending_index} ({self.frames_dropped} descartados)")
                        return ScanResult(
                            status=ScanStatus.FOUND,
                            reference=result.reference,
                            payload=result.payload,
                            attempts=self.attempts,
                            frame_index=pending_index,
                        )
                    if result.status == ScanStatus.UNRECOVERABLE:
                        unrecoverable = result

                await self._wait_or_stop(self.interval - (loop.time() - tick_started))

            if pending is not None and not self.stopped:
                # Fuente agotada: esperar el último decode en curso
                result = await pending
                pending = None
                self.attempts += 1
                if result.found:
                    return ScanResult(
                        status=ScanStatus.FOUND,
                        reference=result.reference,
                        payload=result.payload,
                        attempts=self.attempts,
                        frame_index=pending_index,
                    )
                if result.status == ScanStatus.UNRECOVERABLE:
                    unrecoverable = result
        finally:
            if pending is not None:
                pending.cancel()
            self.source.release()

        if self.stopped:
            return ScanResult(status=ScanStatus.CANCELLED, attempts=self.attempts)
        if unrecoverable is not None:
            return ScanResult(status=ScanStatus.UNRECOVERABLE, payload=unrecoverable.payload, attempts=self.attempts)
        return ScanResult(status=ScanStatus.NOT_FOUND, attempts=self.attempts)
