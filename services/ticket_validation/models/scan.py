"""Modelos del pipeline de escaneo"""
from pydantic import BaseModel
from typing import Optional
from enum import Enum

from services.ticket_purchase.models.ticket import CheckInOutcome


class ScanStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"  # No se detectó ningún QR
    UNRECOVERABLE = "unrecoverable"  # Hay QR, pero su contenido no es una referencia
    CANCELLED = "cancelled"


class DecodeResult(BaseModel):
    status: ScanStatus
    reference: Optional[str] = None
    payload: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status == ScanStatus.FOUND


class ScanResult(BaseModel):
    """Resultado de un adaptador de captura"""
    status: ScanStatus
    reference: Optional[str] = None
    payload: Optional[str] = None
    attempts: int = 0
    frame_index: Optional[int] = None  # Frame (sampler) o escala (documento) que decodificó
    scale: Optional[float] = None


class ScanResponse(BaseModel):
    scan_status: ScanStatus
    reference: Optional[str] = None
    attempts: int = 0
    check_in: Optional[CheckInOutcome] = None
    message: str
