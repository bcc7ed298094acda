from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class CustomerAddress(db.Model):
    """
    Saved address in a customer's address book.

    Orders never reference these rows for their shipping data; checkout copies the
    address into the order as a snapshot, so editing or deleting an entry here
    leaves historical orders untouched.
    """
    __tablename__ = "customer_addresses"
    __table_args__ = (
        db.Index("ix_customer_addresses_user_default", "user_id", "is_default"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=False, index=True)

    label = db.Column(db.String(64), nullable=True)
    recipient_name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=False)
    address_line1 = db.Column(db.String(255), nullable=False)
    address_line2 = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(128), nullable=False)
    state = db.Column(db.String(128), nullable=True)
    postal_code = db.Column(db.String(32), nullable=False)
    country = db.Column(db.String(64), nullable=False)
    instructions = db.Column(db.Text, nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "label": self.label,
            "recipient_name": self.recipient_name,
            "phone": self.phone,
            "address_line1": self.address_line1,
            "address_line2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
            "instructions": self.instructions,
            "is_default": self.is_default,
            "created_at": to_utc_z(self.created_at),
        }
