from .cooldown import Cooldown, utcnow
from .dedup import Admission, DedupGate, DuplicateRequestError
from .delivery import (
    DeliveryError,
    DeliveryResult,
    PermanentDeliveryError,
    TransientDeliveryError,
    mask_code,
    send_with_retry,
)
from .env import env_bool, env_int, env_list
from .otp import OTPInputError, OTPStore, VerificationResult, generate_otp_code
from .phone_utils import (
    mask_email,
    mask_phone,
    normalize_email,
    normalize_phone_ph,
)

__all__ = [
    "Admission",
    "Cooldown",
    "DedupGate",
    "DeliveryError",
    "DeliveryResult",
    "DuplicateRequestError",
    "OTPInputError",
    "OTPStore",
    "PermanentDeliveryError",
    "TransientDeliveryError",
    "VerificationResult",
    "env_bool",
    "env_int",
    "env_list",
    "generate_otp_code",
    "mask_code",
    "mask_email",
    "mask_phone",
    "normalize_email",
    "normalize_phone_ph",
    "send_with_retry",
    "utcnow",
]
