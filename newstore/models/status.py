import enum


class DrawStatus(enum.StrEnum):
    OPEN = "open"
    CLOSED = "closed"


class SlotStatus(enum.StrEnum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    SOLD = "sold"


class ReservationStatus(enum.StrEnum):
    ACTIVE = "active"
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @classmethod
    def normalize(cls, value: str | None) -> "ReservationStatus":
        """Map legacy spellings onto the canonical vocabulary.

        pending, reserved and the empty string all meant a blocking hold.
        """
        raw = (value or "").strip().lower()
        if raw in ("", "pending", "reserved", "active"):
            return cls.ACTIVE
        if raw in ("paid", "approved"):
            return cls.PAID
        if raw in ("canceled", "cancelled"):
            return cls.CANCELLED
        return cls(raw)

    @property
    def is_blocking(self) -> bool:
        return self is ReservationStatus.ACTIVE


class PaymentStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    AUTHORIZED = "authorized"
    IN_PROCESS = "in_process"
    IN_MEDIATION = "in_mediation"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    CHARGED_BACK = "charged_back"


FINAL_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.APPROVED,
        PaymentStatus.REJECTED,
        PaymentStatus.CANCELLED,
        PaymentStatus.REFUNDED,
        PaymentStatus.CHARGED_BACK,
    }
)


def normalize_payment_status(value: str | None) -> str:
    """Lower-case provider status, folding local spellings of approval."""
    raw = (value or "").strip().lower()
    if raw in ("paid", "pago"):
        return PaymentStatus.APPROVED.value
    if raw == "canceled":
        return PaymentStatus.CANCELLED.value
    return raw or PaymentStatus.PENDING.value


def is_approved(value: str | None) -> bool:
    return normalize_payment_status(value) == PaymentStatus.APPROVED


class PaymentMethod(enum.StrEnum):
    PIX = "pix"
    CARD = "card"
    VOUCHER = "voucher"


class AutopayOutcome(enum.StrEnum):
    OK = "ok"
    ERROR = "error"
    SKIPPED = "skipped"
