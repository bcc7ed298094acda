from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Payment(db.Model):
    """
    One payment attempt against an order.

    Retries create new rows; a row is never reused for a second attempt.
    idempotency_key is unique: one key maps to at most one applied outcome.
    external_id holds the gateway session id for card payments.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.Index("ix_payments_order_status", "order_id", "status"),
        db.Index("ix_payments_method_status", "method", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    method = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending")
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)

    external_id = db.Column(db.String(128), nullable=True, index=True)
    external_status = db.Column(db.String(32), nullable=True)
    transaction_id = db.Column(db.String(128), nullable=True)
    idempotency_key = db.Column(db.String(96), nullable=False, unique=True)
    failure_reason = db.Column(db.Text, nullable=True)

    # Gateway redirect URL, card details, collector, etc.
    metadata_json = db.Column("metadata", db.JSON, nullable=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    order = db.relationship("Order", back_populates="payments")
    proofs = db.relationship(
        "BankTransferProof",
        back_populates="payment",
        lazy=True,
        order_by="BankTransferProof.id",
    )

    def __repr__(self) -> str:
        return f"<Payment id={self.id} order_id={self.order_id} method={self.method} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "method": self.method,
            "status": self.status,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "external_id": self.external_id,
            "external_status": self.external_status,
            "transaction_id": self.transaction_id,
            "idempotency_key": self.idempotency_key,
            "failure_reason": self.failure_reason,
            "metadata": self.metadata_json,
            "processed_at": to_utc_z(self.processed_at),
            "created_at": to_utc_z(self.created_at),
        }


class BankTransferProof(db.Model):
    """
    Customer-uploaded evidence for a bank transfer.

    Verification fields are stamped once by staff and never changed afterwards.
    """
    __tablename__ = "bank_transfer_proofs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    file_url = db.Column(db.String(1024), nullable=False)
    file_name = db.Column(db.String(255), nullable=False)
    file_size = db.Column(db.Integer, nullable=True)
    mime_type = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verified_by = db.Column(db.Integer, nullable=True)
    verification_notes = db.Column(db.Text, nullable=True)
    is_approved = db.Column(db.Boolean, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    payment = db.relationship("Payment", back_populates="proofs")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "file_url": self.file_url,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "notes": self.notes,
            "verified_at": to_utc_z(self.verified_at),
            "verified_by": self.verified_by,
            "verification_notes": self.verification_notes,
            "is_approved": self.is_approved,
            "created_at": to_utc_z(self.created_at),
        }
