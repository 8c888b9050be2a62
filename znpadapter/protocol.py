"""Z-Stack (ZNP) command codes, NV item identifiers and message layouts."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import ClassVar

PACKET_FLAG = 0xFE
SKIP_BOOTLOADER = 0xEF

REQUEST_TIMEOUT = 10.0
CLEAR_DELAY = 4.0

NOT_STARTED_AUTOMATICALLY = 0x00
COORDINATOR_STARTED = 0x09

AF_DISCV_ROUTE = 0x20
AF_DEFAULT_RADIUS = 0x0F


class Command(IntEnum):
    """ZNP command identifiers as they appear on the wire (big-endian)."""

    SYS_VERSION = 0x2102
    SYS_OSAL_NV_READ = 0x2108
    SYS_OSAL_NV_WRITE = 0x2109
    SYS_SET_TX_POWER = 0x2114
    AF_REGISTER = 0x2400
    AF_DATA_REQUEST = 0x2401
    AF_DATA_REQUEST_EXT = 0x2402
    AF_INTER_PAN_CTL = 0x2410
    ZDO_MGMT_PERMIT_JOIN_REQ = 0x2536
    ZDO_MSG_CB_REGISTER = 0x253E
    ZDO_STARTUP_FROM_APP = 0x2540
    ZDO_ADD_GROUP = 0x254B
    ZB_READ_CONFIGURATION = 0x2604
    ZB_WRITE_CONFIGURATION = 0x2605
    UTIL_GET_DEVICE_INFO = 0x2700
    APP_CNF_BDB_SET_CHANNEL = 0x2F08

    SYS_RESET_REQ = 0x4100
    SYS_RESET_IND = 0x4180
    AF_DATA_CONFIRM = 0x4480
    AF_INCOMING_MSG = 0x4481
    AF_INCOMING_MSG_EXT = 0x4482
    ZDO_MGMT_PERMIT_JOIN_RSP = 0x45B6
    ZDO_MGMT_NWK_UPDATE_RSP = 0x45B8
    ZDO_STATE_CHANGE_IND = 0x45C0
    ZDO_END_DEVICE_ANNCE_IND = 0x45C1
    ZDO_SRC_RTG_IND = 0x45C4
    ZDO_CONCENTRATOR_IND = 0x45C8
    ZDO_LEAVE_IND = 0x45C9
    ZDO_TC_DEV_IND = 0x45CA
    ZDO_PERMIT_JOIN_IND = 0x45CB
    ZDO_MSG_CB_INCOMING = 0x45FF
    APP_CNF_BDB_COMMISSIONING = 0x4F80


class NvItem(IntEnum):
    """Non-volatile configuration items of the coordinator."""

    STARTUP_OPTION = 0x0003
    PRECFGKEY = 0x0062
    PRECFGKEYS_ENABLE = 0x0063
    PANID = 0x0083
    CHANLIST = 0x0084
    LOGICAL_TYPE = 0x0087
    ZDO_DIRECT_CB = 0x008F
    TCLK_TABLE = 0x0101


class ZStackVersion(Enum):
    """Firmware family; the value is the model name reported for it."""

    ZSTACK_3X0 = "Z-Stack 3.x.0"
    ZSTACK_30X = "Z-Stack 3.0.x"
    ZSTACK_12X = "Z-Stack 1.2.x"


class AddressMode(IntEnum):
    """Destination addressing modes of an extended data request."""

    GROUP = 0x01
    SHORT = 0x02
    IEEE = 0x03


def _unpack(layout: struct.Struct, data: bytes, what: str, offset: int = 0) -> tuple:
    needed = offset + layout.size
    if len(data) < needed:
        raise ValueError(f"{what} needs {needed} bytes, got {len(data)}")
    return layout.unpack_from(data, offset)


def _pack(layout: struct.Struct, what: str, *values: int) -> bytes:
    try:
        return layout.pack(*values)
    except struct.error as exc:
        raise ValueError(f"cannot encode {what}: {exc}") from exc


def ieee_from_wire(data: bytes) -> bytes:
    """Turn a little-endian wire IEEE address into big-endian display order."""
    if len(data) != 8:
        raise ValueError(f"IEEE address must be 8 bytes, got {len(data)}")
    return bytes(reversed(data))


def ieee_to_wire(address: bytes) -> bytes:
    """Turn a big-endian IEEE address into the little-endian wire order."""
    if len(address) != 8:
        raise ValueError(f"IEEE address must be 8 bytes, got {len(address)}")
    return bytes(reversed(address))


@dataclass(frozen=True)
class VersionInfo:
    """Reply to SYS_VERSION."""

    transport: int
    product: int
    major: int
    minor: int
    patch: int
    build: int

    _layout: ClassVar[struct.Struct] = struct.Struct("<BBBBBI")

    @classmethod
    def unpack(cls, data: bytes) -> VersionInfo:
        return cls(*_unpack(cls._layout, data, "version reply"))

    @property
    def stack_version(self) -> ZStackVersion:
        if self.product == 0x01:
            return ZStackVersion.ZSTACK_3X0
        if self.product == 0x02:
            return ZStackVersion.ZSTACK_30X
        return ZStackVersion.ZSTACK_12X


@dataclass(frozen=True)
class DataRequest:
    """AF_DATA_REQUEST: unicast to a short network address."""

    network_address: int
    dst_endpoint: int
    src_endpoint: int
    cluster_id: int
    transaction_id: int
    payload: bytes = b""
    options: int = AF_DISCV_ROUTE
    radius: int = AF_DEFAULT_RADIUS

    _layout: ClassVar[struct.Struct] = struct.Struct("<HBBHBBBB")

    def pack(self) -> bytes:
        header = _pack(
            self._layout,
            "data request",
            self.network_address,
            self.dst_endpoint,
            self.src_endpoint,
            self.cluster_id,
            self.transaction_id,
            self.options,
            self.radius,
            len(self.payload),
        )
        return header + bytes(self.payload)


@dataclass(frozen=True)
class ExtendedRequest:
    """AF_DATA_REQUEST_EXT: group, short, IEEE or inter-PAN addressing."""

    address_mode: AddressMode
    dst_address: int
    dst_endpoint: int
    dst_pan_id: int
    src_endpoint: int
    cluster_id: int
    transaction_id: int
    payload: bytes = b""
    options: int = 0x00
    radius: int | None = None

    _layout: ClassVar[struct.Struct] = struct.Struct("<BQBHBHBBBH")

    def pack(self) -> bytes:
        radius = self.radius
        if radius is None:
            radius = AF_DEFAULT_RADIUS * 2 if self.dst_pan_id else AF_DEFAULT_RADIUS
        header = _pack(
            self._layout,
            "extended request",
            int(self.address_mode),
            self.dst_address,
            self.dst_endpoint,
            self.dst_pan_id,
            self.src_endpoint,
            self.cluster_id,
            self.transaction_id,
            self.options,
            radius,
            len(self.payload),
        )
        return header + bytes(self.payload)


@dataclass(frozen=True)
class RegisterEndpoint:
    """AF_REGISTER: announce a local endpoint with its cluster lists."""

    endpoint_id: int
    profile_id: int
    device_id: int
    in_clusters: tuple[int, ...] = ()
    out_clusters: tuple[int, ...] = ()
    version: int = 0x00
    latency: int = 0x00

    _layout: ClassVar[struct.Struct] = struct.Struct("<BHHBB")

    def pack(self) -> bytes:
        parts = [
            _pack(
                self._layout,
                "endpoint registration",
                self.endpoint_id,
                self.profile_id,
                self.device_id,
                self.version,
                self.latency,
            )
        ]
        for clusters in (self.in_clusters, self.out_clusters):
            layout = struct.Struct(f"<B{len(clusters)}H")
            parts.append(_pack(layout, "cluster list", len(clusters), *clusters))
        return b"".join(parts)


@dataclass(frozen=True)
class PermitJoinRequest:
    """ZDO_MGMT_PERMIT_JOIN_REQ."""

    dst_address: int
    duration: int
    mode: int = 0x0F
    significance: int = 0x00

    _layout: ClassVar[struct.Struct] = struct.Struct("<BHBB")

    def pack(self) -> bytes:
        return _pack(
            self._layout,
            "permit join request",
            self.mode,
            self.dst_address,
            self.duration,
            self.significance,
        )


@dataclass(frozen=True)
class DataConfirm:
    """AF_DATA_CONFIRM indication."""

    status: int
    endpoint_id: int
    transaction_id: int

    _layout: ClassVar[struct.Struct] = struct.Struct("<BBB")

    @classmethod
    def unpack(cls, data: bytes) -> DataConfirm:
        return cls(*_unpack(cls._layout, data, "data confirm"))


@dataclass(frozen=True)
class IncomingMessage:
    """AF_INCOMING_MSG indication carrying a ZCL payload."""

    group_id: int
    cluster_id: int
    src_address: int
    src_endpoint: int
    dst_endpoint: int
    broadcast: int
    link_quality: int
    security: int
    timestamp: int
    transaction_id: int
    payload: bytes

    _layout: ClassVar[struct.Struct] = struct.Struct("<HHHBBBBBIBB")

    @classmethod
    def unpack(cls, data: bytes) -> IncomingMessage:
        *fields, length = _unpack(cls._layout, data, "incoming message")
        start = cls._layout.size
        return cls(*fields, payload=bytes(data[start:start + length]))


@dataclass(frozen=True)
class ExtendedMessage:
    """AF_INCOMING_MSG_EXT indication, used for inter-PAN traffic."""

    group_id: int
    cluster_id: int
    src_address_mode: int
    src_address: int
    src_endpoint: int
    src_pan_id: int
    dst_endpoint: int
    broadcast: int
    link_quality: int
    security: int
    timestamp: int
    transaction_id: int
    payload: bytes

    _layout: ClassVar[struct.Struct] = struct.Struct("<HHBQBHBBBBIBH")

    @classmethod
    def unpack(cls, data: bytes) -> ExtendedMessage:
        *fields, length = _unpack(cls._layout, data, "extended message")
        start = cls._layout.size
        return cls(*fields, payload=bytes(data[start:start + length]))

    @property
    def ieee_address(self) -> bytes:
        """Source address as a big-endian IEEE address."""
        return self.src_address.to_bytes(8, "big")


@dataclass(frozen=True)
class ZdoMessage:
    """ZDO_MSG_CB_INCOMING indication; the payload starts with a status byte."""

    src_address: int
    broadcast: int
    cluster_id: int
    security: int
    transaction_id: int
    dst_address: int
    payload: bytes

    _layout: ClassVar[struct.Struct] = struct.Struct("<HBHBBH")

    @classmethod
    def unpack(cls, data: bytes) -> ZdoMessage:
        fields = _unpack(cls._layout, data, "ZDO message")
        return cls(*fields, payload=bytes(data[cls._layout.size:]))

    @property
    def status(self) -> int:
        if not self.payload:
            raise ValueError("ZDO message has no status byte")
        return self.payload[0]


@dataclass(frozen=True)
class DeviceLeave:
    """ZDO_LEAVE_IND indication."""

    network_address: int
    ieee_address: bytes
    request: int
    remove: int
    rejoin: int

    _layout: ClassVar[struct.Struct] = struct.Struct("<H8sBBB")

    @classmethod
    def unpack(cls, data: bytes) -> DeviceLeave:
        network_address, ieee, request, remove, rejoin = _unpack(cls._layout, data, "device leave")
        return cls(network_address, ieee_from_wire(ieee), request, remove, rejoin)


@dataclass(frozen=True)
class DeviceAnnounce:
    """ZDO_END_DEVICE_ANNCE_IND indication (after the two-byte source address)."""

    network_address: int
    ieee_address: bytes

    _layout: ClassVar[struct.Struct] = struct.Struct("<H8s")

    @classmethod
    def unpack(cls, data: bytes) -> DeviceAnnounce:
        network_address, ieee = _unpack(cls._layout, data, "device announce", offset=2)
        return cls(network_address, ieee_from_wire(ieee))