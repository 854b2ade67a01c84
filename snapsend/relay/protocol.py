"""
Wire protocol: `{type, data}` envelopes decoded into tagged message models.

Each direction has its own discriminated union so an unexpected `type` on a
given connection fails validation and surfaces as a ProtocolError.
"""

import json
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from snapsend.discovery.models import Device, WireModel
from snapsend.errors import ProtocolError
from snapsend.pairing.models import Pairing
from snapsend.transfer.models import ChunkFrame, FileMeta, Transfer

# --- Payloads ---


class DeviceSetupData(WireModel):
    name: str
    stable_id: str


class NameUpdateData(WireModel):
    name: str


class PairRequestData(WireModel):
    target_device_handle: str


class TerminateData(WireModel):
    pairing_id: str


class FileTransferData(FileMeta):
    from_device: str | None = None


class FileReceivedAckData(WireModel):
    transfer_id: str
    filename: str


class RelayDevicesData(WireModel):
    devices: list[Device] = Field(default_factory=list)


class RelayForwardData(WireModel):
    target: str
    message: dict


class DeviceListData(WireModel):
    device: Device
    online_devices: list[Device] = Field(default_factory=list)


class PairingData(WireModel):
    pairing: Pairing
    partner_device: Device | None = None


class TerminatedData(WireModel):
    pairing_id: str
    terminated_by: str
    reason: str = "requested"


class FileReceivedData(WireModel):
    file: FileMeta
    from_device: str = ""


class SentConfirmationData(WireModel):
    filename: str
    recipient_count: int
    is_clipboard: bool = False


class QueuedData(WireModel):
    transfer: Transfer
    target_device_handle: str


class SavedData(WireModel):
    transfer: Transfer


class ClipboardData(WireModel):
    content: str
    from_device: str = ""


class FailedData(WireModel):
    transfer_id: str
    original_name: str = ""
    direction: str = ""
    reason: str = ""


class ProgressData(WireModel):
    transfer_id: str
    progress: float
    direction: str


class ErrorData(WireModel):
    message: str


# --- Messages ---


class DeviceSetup(BaseModel):
    type: Literal["device-setup"]
    data: DeviceSetupData


class DeviceNameUpdate(BaseModel):
    type: Literal["device-name-update"]
    data: NameUpdateData


class PairRequest(BaseModel):
    type: Literal["pair-request"]
    data: PairRequestData


class TerminateConnection(BaseModel):
    type: Literal["terminate-connection"]
    data: TerminateData


class FileTransferMessage(BaseModel):
    type: Literal["file-transfer"]
    data: FileTransferData


class FileChunkMessage(BaseModel):
    type: Literal["file-chunk"]
    data: ChunkFrame


class FileReceivedAck(BaseModel):
    type: Literal["file-received-ack"]
    data: FileReceivedAckData


class RelayDevices(BaseModel):
    type: Literal["relay-devices"]
    data: RelayDevicesData


class RelayForward(BaseModel):
    type: Literal["relay-forward"]
    data: RelayForwardData


class DeviceListMessage(BaseModel):
    type: Literal["setup-complete", "device-connected", "device-disconnected", "name-updated"]
    data: DeviceListData


class PairingMessage(BaseModel):
    type: Literal["pair-accepted", "auto-paired"]
    data: PairingData


class ConnectionTerminated(BaseModel):
    type: Literal["connection-terminated"]
    data: TerminatedData


class FileReceived(BaseModel):
    type: Literal["file-received"]
    data: FileReceivedData


class FileSentConfirmation(BaseModel):
    type: Literal["file-sent-confirmation"]
    data: SentConfirmationData


class FileQueued(BaseModel):
    type: Literal["file-queued"]
    data: QueuedData


class FileSaved(BaseModel):
    type: Literal["file-saved"]
    data: SavedData


class ClipboardSync(BaseModel):
    type: Literal["clipboard-sync"]
    data: ClipboardData


class TransferFailed(BaseModel):
    type: Literal["transfer-failed"]
    data: FailedData


class ChunkProgressMessage(BaseModel):
    type: Literal["chunk-progress"]
    data: ProgressData


class ErrorMessage(BaseModel):
    type: Literal["error"]
    data: ErrorData


ClientMessage = Annotated[
    Union[
        DeviceSetup,
        DeviceNameUpdate,
        PairRequest,
        TerminateConnection,
        FileTransferMessage,
        FileChunkMessage,
    ],
    Field(discriminator="type"),
]

PeerMessage = Annotated[
    Union[
        FileTransferMessage,
        FileChunkMessage,
        FileReceivedAck,
        RelayDevices,
        RelayForward,
    ],
    Field(discriminator="type"),
]

RelayMessage = Annotated[
    Union[
        DeviceListMessage,
        PairingMessage,
        ConnectionTerminated,
        FileReceived,
        FileChunkMessage,
        FileSentConfirmation,
        FileQueued,
        FileSaved,
        ClipboardSync,
        TransferFailed,
        ChunkProgressMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_client_adapter = TypeAdapter(ClientMessage)
_peer_adapter = TypeAdapter(PeerMessage)
_relay_adapter = TypeAdapter(RelayMessage)


def _decode(adapter: TypeAdapter, raw):
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Malformed JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ProtocolError("Message must be a JSON object")
    try:
        return adapter.validate_python(raw)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        raise ProtocolError(
            f"Invalid '{raw.get('type')}' message: {first.get('msg', e)}"
        ) from e


def decode_client_message(raw):
    """Decode a message a device sends to its relay."""
    return _decode(_client_adapter, raw)


def decode_peer_message(raw):
    """Decode a message received over a direct device-to-device link."""
    return _decode(_peer_adapter, raw)


def decode_relay_message(raw):
    """Decode a message a relay sends to a device."""
    return _decode(_relay_adapter, raw)


def envelope(message_type: str, data: dict) -> dict:
    return {"type": message_type, "data": data}


def to_client_message(message: dict) -> dict:
    """Re-address a peer transfer request in the form relay clients expect."""
    if message.get("type") != "file-transfer":
        return message
    data = dict(message.get("data") or {})
    from_device = data.pop("fromDevice", "")
    return envelope("file-received", {"file": data, "fromDevice": from_device})


def transfer_message(message_type: str, meta: FileMeta, from_device: str) -> dict:
    """Build the transfer-request message for a payload description."""
    if message_type == "file-received":
        return envelope(message_type, {"file": meta.to_wire(), "fromDevice": from_device})
    return envelope(message_type, {**meta.to_wire(), "fromDevice": from_device})
