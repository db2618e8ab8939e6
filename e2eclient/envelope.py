"""
Inbound envelopes and their payload classification.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from e2ecrypto import CryptoError, PreKeyMessage, RatchetMessage, payload_to_message

from .errors import ProtocolError

logger = logging.getLogger(__name__)


class InboundEnvelope(BaseModel):
    """Message as delivered by the relay"""
    model_config = ConfigDict(populate_by_name=True)

    enc_payload: Any = Field(alias="encPayload")
    sender: str
    seq_id: int = Field(alias="seqID", ge=0)


class PayloadKind(enum.Enum):
    SELF_SEQUENCE = "self"
    NORMAL = "normal"
    PREKEY = "prekey"


@dataclass(frozen=True)
class EnvelopePayload:
    """
    Classified payload of an envelope.

    Exactly one of ``sequence`` (for :attr:`PayloadKind.SELF_SEQUENCE`) and
    ``message`` (for the two ratchet kinds) is set.
    """
    kind: PayloadKind
    sequence: Optional[int] = None
    message: Optional[RatchetMessage] = None


def parse_batch(data: Any) -> List[InboundEnvelope]:
    """
    Parse a ``noiseMessage`` event payload, skipping invalid envelopes.

    Raises:
        ProtocolError: If the payload is not a list
    """
    if not isinstance(data, list):
        raise ProtocolError("Message batch is not a list")

    envelopes = []
    for item in data:
        try:
            envelopes.append(InboundEnvelope.model_validate(item))
        except ValidationError as e:
            logger.warning("Skipping invalid envelope: %s", e.errors(include_url=False))
    return envelopes


def classify(envelope: InboundEnvelope, device_id: str) -> EnvelopePayload:
    """
    Decide what an envelope carries.

    Self-addressed envelopes carry a self-mailbox sequence number, all others
    a ratchet message.

    Raises:
        ProtocolError: If the payload does not have the expected shape
    """
    payload = envelope.enc_payload
    if envelope.sender == device_id:
        if not isinstance(payload, int) or isinstance(payload, bool) or payload < 1:
            raise ProtocolError(f"Self-addressed payload is not a sequence number: {payload!r}")
        return EnvelopePayload(PayloadKind.SELF_SEQUENCE, sequence=payload)

    try:
        message = payload_to_message(payload)
    except CryptoError as e:
        raise ProtocolError(f"Undecodable payload from {envelope.sender}: {e}") from e
    if isinstance(message, PreKeyMessage):
        return EnvelopePayload(PayloadKind.PREKEY, message=message)
    return EnvelopePayload(PayloadKind.NORMAL, message=message)
