"""Proof-of-payment receipts for bank-transfer orders."""
from __future__ import annotations

import logging
import os
import random
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import Principal
from .errors import AccessDenied, InvalidOperation, NotFound, StoreFailure, ValidationError
from .models import Order, PaymentMethod, Receipt

logger = logging.getLogger(__name__)

RECEIPT_URL_PREFIX = "/uploads/receipts"
CHUNK_SIZE = 64 * 1024


class Upload(Protocol):
    filename: Optional[str]
    content_type: Optional[str]
    file: BinaryIO


@dataclass(slots=True)
class StoredFile:
    reference: str
    original_name: str
    size: int
    mime_type: str


def is_allowed_type(content_type: Optional[str]) -> bool:
    return bool(content_type) and (
        content_type.startswith("image/") or content_type == "application/pdf"
    )


class ReceiptStorage:
    """Writes receipt uploads under ``<upload_dir>/receipts``."""

    def __init__(self, upload_dir: str, max_bytes: int = 10 * 1024 * 1024):
        self.directory = Path(upload_dir) / "receipts"
        self.max_bytes = max_bytes

    def path_for(self, reference: str) -> Path:
        return self.directory / Path(reference).name

    def save(self, upload: Upload) -> StoredFile:
        if not is_allowed_type(upload.content_type):
            raise ValidationError("Only image files and PDFs are allowed")

        self.directory.mkdir(parents=True, exist_ok=True)
        original = upload.filename or "receipt"
        name = f"receipt-{int(time.time() * 1000)}-{random.randint(0, 10**9)}{Path(original).suffix.lower()}"
        target = self.directory / name

        size = 0
        with open(target, "wb") as out:
            while True:
                chunk = upload.file.read(CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if size > self.max_bytes:
                    break
                out.write(chunk)
        if size > self.max_bytes:
            target.unlink(missing_ok=True)
            raise ValidationError(f"Receipt file exceeds the {self.max_bytes} byte limit")
        if size == 0:
            target.unlink(missing_ok=True)
            raise ValidationError("Receipt file is empty")

        return StoredFile(
            reference=f"{RECEIPT_URL_PREFIX}/{name}",
            original_name=original,
            size=size,
            mime_type=upload.content_type,
        )

    def delete(self, reference: str) -> None:
        """Best effort: a missing or locked file is logged, never raised."""
        try:
            os.remove(self.path_for(reference))
        except OSError as exc:
            logger.warning("Could not delete receipt file %s: %s", reference, exc)


class ReceiptService:
    def __init__(self, db: Session, storage: ReceiptStorage):
        self.db = db
        self.storage = storage

    def attach(self, order_id: int, principal: Principal, upload: Upload) -> Receipt:
        order = self._order(order_id)
        if order.user_id != principal.id and not principal.is_admin:
            raise AccessDenied("Access denied")
        if order.payment_method != PaymentMethod.BANK_TRANSFER.value:
            raise InvalidOperation("Receipts can only be uploaded for bank transfer orders")

        stored = self.storage.save(upload)
        receipt = Receipt(
            order_id=order_id,
            file_path=stored.reference,
            original_filename=stored.original_name,
            file_size=stored.size,
            mime_type=stored.mime_type,
            uploaded_by=principal.id,
        )
        try:
            self.db.add(receipt)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.storage.delete(stored.reference)
            logger.exception("[order=%s] receipt insert failed", order_id)
            raise StoreFailure("Failed to upload receipt") from exc

        self.db.refresh(receipt)
        logger.info("[order=%s] receipt %s uploaded by user=%s", order_id, receipt.id, principal.id)
        return receipt

    def list_for_order(self, order_id: int, principal: Principal) -> List[Receipt]:
        order = self._order(order_id)
        if order.user_id != principal.id and not principal.is_admin:
            raise AccessDenied("Access denied")
        return (
            self.db.query(Receipt)
            .filter(Receipt.order_id == order_id)
            .order_by(Receipt.created_at.desc(), Receipt.id.desc())
            .all()
        )

    def delete(self, receipt_id: int) -> None:
        receipt = self.db.query(Receipt).filter(Receipt.id == receipt_id).first()
        if receipt is None:
            raise NotFound("Receipt not found")
        order_id = receipt.order_id
        self.storage.delete(receipt.file_path)
        try:
            self.db.delete(receipt)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StoreFailure("Failed to delete receipt") from exc
        logger.info("[order=%s] receipt %s deleted", order_id, receipt_id)

    def _order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if order is None:
            raise NotFound("Order not found")
        return order
