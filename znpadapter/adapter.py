"""Z-Stack coordinator adapter: requests, indications and network startup."""

from __future__ import annotations

import logging
import struct
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .framing import FrameDecoder, encode_frame
from .protocol import (
    COORDINATOR_STARTED,
    NOT_STARTED_AUTOMATICALLY,
    REQUEST_TIMEOUT,
    SKIP_BOOTLOADER,
    AddressMode,
    Command,
    DataConfirm,
    DataRequest,
    DeviceAnnounce,
    DeviceLeave,
    ExtendedMessage,
    ExtendedRequest,
    IncomingMessage,
    NvItem,
    PermitJoinRequest,
    RegisterEndpoint,
    VersionInfo,
    ZdoMessage,
    ZStackVersion,
    ieee_from_wire,
)

log = logging.getLogger(__name__)

PERMIT_JOIN_BROADCAST_ADDRESS = 0xFFFC
INTER_PAN_ENDPOINT = 0x0C

ZDO_CALLBACK_CLUSTERS = (
    0x0002,  # node descriptor request
    0x0004,  # simple descriptor request
    0x0005,  # active endpoints request
    0x0021,  # bind request
    0x0022,  # unbind request
    0x0031,  # LQI request
    0x0034,  # leave request
)

EVENTS = frozenset(
    {
        "request_finished",
        "zcl_message",
        "raw_message",
        "zdo_message",
        "device_joined",
        "device_left",
        "coordinator_ready",
    }
)

_IGNORED_INDICATIONS = frozenset(
    {
        Command.ZDO_MGMT_PERMIT_JOIN_RSP,
        Command.ZDO_MGMT_NWK_UPDATE_RSP,
        Command.ZDO_SRC_RTG_IND,
        Command.ZDO_CONCENTRATOR_IND,
        Command.ZDO_TC_DEV_IND,
        Command.ZDO_PERMIT_JOIN_IND,
    }
)


class ZStackError(Exception):
    """A request to the coordinator failed."""


class ZStackTimeout(ZStackError):
    """The coordinator did not answer a request in time."""


class Transport(Protocol):
    """Byte stream to the coordinator."""

    def write(self, data: bytes) -> None: ...

    def read(self, timeout: float) -> bytes: ...


@dataclass(frozen=True)
class Endpoint:
    """A local endpoint registered on the coordinator."""

    endpoint_id: int
    profile_id: int
    device_id: int
    in_clusters: tuple[int, ...] = ()
    out_clusters: tuple[int, ...] = ()


@dataclass(frozen=True)
class AdapterConfig:
    """Network parameters the coordinator is configured with."""

    channel: int = 11
    pan_id: int = 0x1A62
    network_key: bytes = bytes.fromhex("01030507090b0d0f00020406080a0c0d")
    default_key: bytes = b"ZigBeeAlliance09"
    power: int = 10
    permit_join_address: int = PERMIT_JOIN_BROADCAST_ADDRESS
    write: bool = False
    reset_delay: float = 0.1
    request_timeout: float = REQUEST_TIMEOUT
    endpoints: tuple[Endpoint, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not 11 <= self.channel <= 26:
            raise ValueError(f"channel {self.channel} is outside 11..26")
        if not 0 <= self.pan_id <= 0xFFFF:
            raise ValueError(f"PAN ID {self.pan_id:#x} does not fit in 16 bits")
        if len(self.network_key) != 16:
            raise ValueError("network key must be 16 bytes")
        if len(self.default_key) != 16:
            raise ValueError("default key must be 16 bytes")


def _status(reply: bytes) -> int:
    return reply[0] if reply else 0xFF


class ZStackAdapter:
    """Drives a Z-Stack coordinator over a byte transport."""

    def __init__(self, transport: Transport, config: AdapterConfig | None = None) -> None:
        self._transport = transport
        self.config = config or AdapterConfig()
        self._decoder = FrameDecoder()
        self._callbacks: dict[str, list[Callable[..., None]]] = defaultdict(list)
        self._pending: int | None = None
        self._reply: bytes | None = None
        self._clear = False

        self.status = 0
        self.version: ZStackVersion | None = None
        self.model_name: str | None = None
        self.manufacturer_name: str | None = None
        self.firmware: str | None = None
        self.ieee_address: bytes | None = None

        channel_mask = struct.pack("<I", 1 << self.config.channel)
        self.nv_items: dict[NvItem, bytes] = dict(
            sorted(
                {
                    NvItem.PRECFGKEY: bytes(self.config.network_key),
                    NvItem.PRECFGKEYS_ENABLE: b"\x01",
                    NvItem.PANID: struct.pack("<H", self.config.pan_id),
                    NvItem.CHANLIST: channel_mask,
                    NvItem.LOGICAL_TYPE: b"\x00",
                    NvItem.ZDO_DIRECT_CB: b"\x01",
                }.items()
            )
        )

    # events

    def on(self, event: str, callback: Callable[..., None]) -> None:
        """Register a callback for one of the adapter's events."""
        if event not in EVENTS:
            raise ValueError(f"unknown event {event!r}")
        self._callbacks[event].append(callback)

    def _emit(self, event: str, *args: object) -> None:
        for callback in self._callbacks[event]:
            callback(*args)

    # transport

    def send_request(self, command: int, data: bytes = b"") -> bytes:
        """Send a synchronous request and return the data of its reply."""
        frame = encode_frame(command, data)
        log.debug("--> 0x%04x %s", command, bytes(data).hex(":"))
        self._pending = int(command)
        self._reply = None
        self._transport.write(frame)

        deadline = time.monotonic() + self.config.request_timeout
        try:
            while self._reply is None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ZStackTimeout(f"no reply to command 0x{command:04x}")
                chunk = self._transport.read(remaining)
                if chunk:
                    self.feed(chunk)
            return self._reply
        finally:
            self._pending = None
            self._reply = None

    def _checked_request(self, command: int, data: bytes, what: str) -> bytes:
        reply = self.send_request(command, data)
        status = _status(reply)
        if status:
            raise ZStackError(f"{what} failed with status 0x{status:02x}")
        return reply

    def feed(self, data: bytes) -> None:
        """Pass received bytes in; every complete frame is handled."""
        for frame in self._decoder.feed(data):
            self.handle_packet(frame.command, frame.data)

    def handle_packet(self, command: int, data: bytes) -> None:
        """Handle one received packet: a reply or an indication."""
        log.debug("<-- 0x%04x %s", command, bytes(data).hex(":"))

        if command & 0x2000:
            if self._pending is not None and command ^ 0x4000 == self._pending:
                self._reply = bytes(data)
            return

        try:
            self._handle_indication(command, bytes(data))
        except ValueError as exc:
            log.warning("Malformed packet 0x%04x: %s", command, exc)

    def _handle_indication(self, command: int, data: bytes) -> None:
        if command in _IGNORED_INDICATIONS:
            return

        if command == Command.SYS_RESET_IND:
            try:
                self.start_coordinator()
            except ZStackError as exc:
                log.warning("Coordinator startup failed: %s", exc)

        elif command == Command.AF_DATA_CONFIRM:
            confirm = DataConfirm.unpack(data)
            self._emit("request_finished", confirm.transaction_id, confirm.status)

        elif command == Command.AF_INCOMING_MSG:
            message = IncomingMessage.unpack(data)
            self._emit(
                "zcl_message",
                message.src_address,
                message.src_endpoint,
                message.cluster_id,
                message.link_quality,
                message.payload,
            )

        elif command == Command.AF_INCOMING_MSG_EXT:
            extended = ExtendedMessage.unpack(data)
            if extended.src_address_mode != AddressMode.IEEE:
                log.warning(
                    "Unsupported extended message address mode 0x%02x", extended.src_address_mode
                )
                return
            self._emit(
                "raw_message",
                extended.ieee_address,
                extended.cluster_id,
                extended.link_quality,
                extended.payload,
            )

        elif command == Command.ZDO_STATE_CHANGE_IND:
            if len(data) == 1:
                self.status = data[0]
            if self.version is ZStackVersion.ZSTACK_12X and self.status == COORDINATOR_STARTED:
                self._emit("coordinator_ready")

        elif command == Command.ZDO_END_DEVICE_ANNCE_IND:
            announce = DeviceAnnounce.unpack(data)
            self._emit("device_joined", announce.ieee_address, announce.network_address)

        elif command == Command.ZDO_LEAVE_IND:
            leave = DeviceLeave.unpack(data)
            self._emit("device_left", leave.ieee_address)

        elif command == Command.ZDO_MSG_CB_INCOMING:
            zdo = ZdoMessage.unpack(data)
            self._emit("request_finished", zdo.transaction_id, zdo.status)
            self._emit("zdo_message", zdo.src_address, zdo.cluster_id, zdo.payload)

        elif command == Command.APP_CNF_BDB_COMMISSIONING:
            if len(data) < 3:
                raise ValueError("commissioning notification too short")
            if data[2]:
                return
            if self.status == NOT_STARTED_AUTOMATICALLY:
                log.warning("Network not started, PAN ID collision detected")
            elif self.status == COORDINATOR_STARTED:
                self._emit("coordinator_ready")

        else:
            log.debug(
                "Unrecognized Z-Stack command 0x%04x with data %s",
                command,
                data.hex(":") if data else "(empty)",
            )

    # data requests

    def unicast_request(
        self,
        transaction_id: int,
        network_address: int,
        src_endpoint: int,
        dst_endpoint: int,
        cluster_id: int,
        payload: bytes,
    ) -> None:
        """Send a payload to an endpoint of a device by its network address."""
        request = DataRequest(
            network_address=network_address,
            dst_endpoint=dst_endpoint,
            src_endpoint=src_endpoint,
            cluster_id=cluster_id,
            transaction_id=transaction_id,
            payload=bytes(payload),
        )
        self._checked_request(Command.AF_DATA_REQUEST, request.pack(), "Data request")

    def _extended_request(
        self,
        transaction_id: int,
        address: int | bytes,
        dst_endpoint: int,
        dst_pan_id: int,
        src_endpoint: int,
        cluster_id: int,
        payload: bytes,
        group: bool = False,
    ) -> None:
        if isinstance(address, int):
            address = struct.pack("<H", address)
        if len(address) == 2:
            mode = AddressMode.GROUP if group else AddressMode.SHORT
            value = int.from_bytes(address, "little")
        elif len(address) == 8:
            mode = AddressMode.IEEE
            value = int.from_bytes(address, "big")
        else:
            raise ValueError(f"address must be 2 or 8 bytes, got {len(address)}")

        request = ExtendedRequest(
            address_mode=mode,
            dst_address=value,
            dst_endpoint=dst_endpoint,
            dst_pan_id=dst_pan_id,
            src_endpoint=src_endpoint,
            cluster_id=cluster_id,
            transaction_id=transaction_id,
            payload=bytes(payload),
        )
        self._checked_request(Command.AF_DATA_REQUEST_EXT, request.pack(), "Extended data request")

    def multicast_request(
        self,
        transaction_id: int,
        group_id: int,
        src_endpoint: int,
        dst_endpoint: int,
        cluster_id: int,
        payload: bytes,
    ) -> None:
        """Send a payload to a group."""
        self._extended_request(
            transaction_id, group_id, dst_endpoint, 0x0000, src_endpoint, cluster_id, payload, True
        )

    def unicast_inter_pan_request(
        self, transaction_id: int, ieee_address: bytes, cluster_id: int, payload: bytes
    ) -> None:
        """Send an inter-PAN payload to one device by IEEE address."""
        self._extended_request(
            transaction_id, bytes(ieee_address), 0xFE, 0xFFFF, INTER_PAN_ENDPOINT, cluster_id, payload
        )

    def broadcast_inter_pan_request(self, transaction_id: int, cluster_id: int, payload: bytes) -> None:
        """Broadcast an inter-PAN payload."""
        self._extended_request(
            transaction_id, 0xFFFF, 0xFE, 0xFFFF, INTER_PAN_ENDPOINT, cluster_id, payload
        )

    def set_inter_pan_channel(self, channel: int) -> None:
        """Switch the radio to a channel for inter-PAN traffic."""
        self._checked_request(
            Command.AF_INTER_PAN_CTL, bytes([0x01, channel]), f"Set Inter-PAN channel {channel}"
        )

    def reset_inter_pan_channel(self) -> None:
        """Return the radio to the network channel; failures are only logged."""
        try:
            self._checked_request(Command.AF_INTER_PAN_CTL, b"\x00", "Reset Inter-PAN")
        except ZStackError as exc:
            log.warning("Reset Inter-PAN request failed: %s", exc)

    # configuration

    def write_nv_item(self, item_id: int, data: bytes) -> None:
        """Write a non-volatile item."""
        request = struct.pack("<HBB", item_id, 0x00, len(data)) + bytes(data)
        self._checked_request(
            Command.SYS_OSAL_NV_WRITE, request, f"NV item 0x{item_id:04x} write request"
        )

    def write_configuration(self, item_id: int, data: bytes) -> None:
        """Write a configuration item through the ZB interface."""
        request = struct.pack("<BB", item_id & 0xFF, len(data)) + bytes(data)
        self._checked_request(
            Command.ZB_WRITE_CONFIGURATION, request, f"NV item 0x{item_id:04x} write request"
        )

    def _read_nv_item(self, item: NvItem) -> tuple[int, bytes]:
        try:
            if self.version is not ZStackVersion.ZSTACK_12X or item != NvItem.PRECFGKEY:
                reply = self.send_request(Command.SYS_OSAL_NV_READ, struct.pack("<HB", item, 0x00))
                return _status(reply), reply[2:]
            reply = self.send_request(Command.ZB_READ_CONFIGURATION, bytes([item & 0xFF]))
            return _status(reply), reply[3:]
        except ZStackTimeout as exc:
            raise ZStackError(f"NV item 0x{item:04x} read request failed") from exc

    def start_coordinator(self) -> bool:
        """Configure the coordinator and start the network.

        Returns False when the stored configuration differed and the adapter
        was reset to rewrite it, True when network startup was requested.
        """
        try:
            version = VersionInfo.unpack(self.send_request(Command.SYS_VERSION))
        except (ZStackTimeout, ValueError) as exc:
            raise ZStackError("Adapter version request failed") from exc

        self.version = version.stack_version
        self.model_name = self.version.value

        if not self._clear:
            self.manufacturer_name = "Texas Instruments"
            self.firmware = str(version.build)
            log.info("Adapter type: %s (%s)", self.model_name, self.firmware)

            info = self._checked_request(Command.UTIL_GET_DEVICE_INFO, b"", "Device information request")
            if len(info) < 9:
                raise ZStackError("Device information reply too short")
            self.ieee_address = ieee_from_wire(info[1:9])

            for item, value in self.nv_items.items():
                status, data = self._read_nv_item(item)
                if status == 0 and data == value:
                    continue

                log.warning(
                    "NV item 0x%04x value %s doesn't match configuration value %s",
                    item,
                    data.hex(":") if data else "(empty)",
                    value.hex(":"),
                )
                if not self.config.write:
                    raise ZStackError("Adapter configuration can't be changed, write protection enabled")

                try:
                    self.write_nv_item(NvItem.STARTUP_OPTION, b"\x03")
                except ZStackError as exc:
                    log.warning("%s", exc)
                self._clear = True
                self.soft_reset()
                return False
        else:
            log.info("Starting new network...")
            self._clear = False

            for item, value in self.nv_items.items():
                if self.version is not ZStackVersion.ZSTACK_12X or item != NvItem.PRECFGKEY:
                    self.write_nv_item(item, value)
                else:
                    self.write_configuration(item, value)
                    self.write_nv_item(
                        NvItem.TCLK_TABLE,
                        b"\xff" * 8 + bytes(self.config.default_key) + b"\x00" * 8,
                    )
                log.warning("NV item 0x%04x value set to %s", item, value.hex(":"))

        if self.version is not ZStackVersion.ZSTACK_12X:
            self._checked_request(
                Command.APP_CNF_BDB_SET_CHANNEL,
                struct.pack("<BI", 0x01, 1 << self.config.channel),
                "Set primary channel request",
            )
            self._checked_request(
                Command.APP_CNF_BDB_SET_CHANNEL,
                struct.pack("<BI", 0x00, 0),
                "Set secondary channel request",
            )

        for cluster in ZDO_CALLBACK_CLUSTERS:
            try:
                self.send_request(Command.ZDO_MSG_CB_REGISTER, struct.pack("<H", cluster | 0x8000))
            except ZStackTimeout as exc:
                raise ZStackError(
                    f"ZDO cluster 0x{cluster:04x} callback register request failed"
                ) from exc

        for endpoint in self.config.endpoints:
            request = RegisterEndpoint(
                endpoint_id=endpoint.endpoint_id,
                profile_id=endpoint.profile_id,
                device_id=endpoint.device_id,
                in_clusters=tuple(endpoint.in_clusters),
                out_clusters=tuple(endpoint.out_clusters),
            )
            try:
                self._checked_request(Command.AF_REGISTER, request.pack(), "Endpoint register request")
            except ZStackError as exc:
                log.warning("Endpoint 0x%02x: %s", endpoint.endpoint_id, exc)
                continue
            log.info("Endpoint 0x%02x registered successfully", endpoint.endpoint_id)

        self._checked_request(
            Command.AF_INTER_PAN_CTL, bytes([0x02, INTER_PAN_ENDPOINT]), "Set Inter-PAN endpoint request"
        )

        try:
            self._checked_request(
                Command.SYS_SET_TX_POWER, bytes([self.config.power & 0xFF]), "Set TX power request"
            )
        except ZStackError as exc:
            log.warning("%s", exc)

        try:
            failed = _status(self.send_request(Command.ZDO_STARTUP_FROM_APP, b"\x00\x00")) == 0x02
        except ZStackTimeout:
            failed = True

        if failed:
            if self.version is ZStackVersion.ZSTACK_12X and self.status == COORDINATOR_STARTED:
                return True
            raise ZStackError("Startup request failed")

        return True

    def soft_reset(self) -> None:
        """Skip the bootloader and ask the coordinator to restart."""
        self._transport.write(bytes([SKIP_BOOTLOADER]))
        time.sleep(self.config.reset_delay)
        self._transport.write(encode_frame(Command.SYS_RESET_REQ, b"\x01"))

    def permit_join(self, enabled: bool) -> None:
        """Open or close the network for joining devices."""
        request = PermitJoinRequest(
            dst_address=self.config.permit_join_address if enabled else PERMIT_JOIN_BROADCAST_ADDRESS,
            duration=0xF0 if enabled else 0x00,
        )
        self._checked_request(Command.ZDO_MGMT_PERMIT_JOIN_REQ, request.pack(), "Set permit join request")