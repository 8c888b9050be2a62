import struct

import pytest

from znpadapter.adapter import (
    ZDO_CALLBACK_CLUSTERS,
    AdapterConfig,
    Endpoint,
    ZStackAdapter,
    ZStackError,
    ZStackTimeout,
)
from znpadapter.framing import FrameDecoder, encode_frame
from znpadapter.protocol import (
    AddressMode,
    Command,
    DataRequest,
    ExtendedRequest,
    NvItem,
    PermitJoinRequest,
    ZStackVersion,
    ieee_to_wire,
)

IEEE = bytes.fromhex("00124b0001020304")


class FakeTransport:
    def __init__(self, responder=None):
        self.responder = responder or (lambda command, data: b"\x00")
        self.written = []
        self.frames = []
        self.incoming = bytearray()
        self._decoder = FrameDecoder()

    def write(self, data):
        self.written.append(bytes(data))
        for frame in self._decoder.feed(data):
            self.frames.append(frame)
            reply = self.responder(frame.command, frame.data)
            if reply is not None:
                self.incoming += encode_frame(frame.command | 0x4000, reply)

    def read(self, timeout):
        data = bytes(self.incoming)
        self.incoming.clear()
        return data

    def commands(self):
        return [frame.command for frame in self.frames]


def make_adapter(responder=None, **config):
    config.setdefault("reset_delay", 0)
    config.setdefault("request_timeout", 0.05)
    transport = FakeTransport(responder)
    return ZStackAdapter(transport, AdapterConfig(**config)), transport


def recorder(adapter, event):
    calls = []
    adapter.on(event, lambda *args: calls.append(args))
    return calls


def test_unicast_request_frame():
    adapter, transport = make_adapter()
    adapter.unicast_request(7, 0x1234, 1, 2, 0x0006, b"\x01\x02")
    expected = DataRequest(0x1234, 2, 1, 0x0006, 7, b"\x01\x02").pack()
    assert transport.written == [encode_frame(Command.AF_DATA_REQUEST, expected)]
    assert transport.written[0][:4] == b"\xfe\x0c\x24\x01"


def test_unicast_request_failure_status():
    adapter, _ = make_adapter(lambda c, d: b"\x01")
    with pytest.raises(ZStackError):
        adapter.unicast_request(1, 0x1234, 1, 1, 6, b"")


def test_request_timeout():
    adapter, _ = make_adapter(lambda c, d: None)
    with pytest.raises(ZStackTimeout):
        adapter.permit_join(True)


def test_send_request_returns_reply_data():
    adapter, _ = make_adapter(lambda c, d: b"\x00abc")
    assert adapter.send_request(Command.SYS_VERSION, b"") == b"\x00abc"


def test_multicast_uses_group_mode():
    adapter, transport = make_adapter()
    adapter.multicast_request(3, 0x0042, 1, 0xFF, 0x0006, b"\x11")
    data = transport.frames[0].data
    assert transport.frames[0].command == Command.AF_DATA_REQUEST_EXT
    assert data[0] == AddressMode.GROUP
    assert data == ExtendedRequest(AddressMode.GROUP, 0x0042, 0xFF, 0, 1, 6, 3, b"\x11").pack()


def test_unicast_inter_pan_uses_wire_ieee():
    adapter, transport = make_adapter()
    adapter.unicast_inter_pan_request(9, IEEE, 0x1000, b"\x22")
    data = transport.frames[0].data
    assert data[0] == AddressMode.IEEE
    assert data[1:9] == ieee_to_wire(IEEE)
    assert data[9] == 0xFE


def test_broadcast_inter_pan_uses_short_mode():
    adapter, transport = make_adapter()
    adapter.broadcast_inter_pan_request(9, 0x1000, b"")
    data = transport.frames[0].data
    assert data[0] == AddressMode.SHORT
    assert data[1:3] == b"\xff\xff"


def test_inter_pan_bad_address_length():
    adapter, transport = make_adapter()
    with pytest.raises(ValueError):
        adapter.unicast_inter_pan_request(1, b"\x01\x02\x03", 0x1000, b"")
    assert transport.written == []


def test_set_inter_pan_channel():
    adapter, transport = make_adapter()
    adapter.set_inter_pan_channel(15)
    assert transport.frames[0].data == b"\x01\x0f"
    failing, _ = make_adapter(lambda c, d: b"\x02")
    with pytest.raises(ZStackError):
        failing.set_inter_pan_channel(15)


def test_reset_inter_pan_channel_only_logs():
    adapter, transport = make_adapter(lambda c, d: b"\x01")
    adapter.reset_inter_pan_channel()
    assert transport.frames[0].data == b"\x00"


def test_permit_join_frames():
    adapter, transport = make_adapter(permit_join_address=0x0000)
    adapter.permit_join(True)
    adapter.permit_join(False)
    assert transport.frames[0].data == PermitJoinRequest(0x0000, 0xF0).pack()
    assert transport.frames[1].data == PermitJoinRequest(0xFFFC, 0x00).pack()


def test_write_nv_item_frame():
    adapter, transport = make_adapter()
    adapter.write_nv_item(NvItem.STARTUP_OPTION, b"\x03")
    assert transport.frames[0].command == Command.SYS_OSAL_NV_WRITE
    assert transport.frames[0].data == b"\x03\x00\x00\x01\x03"


def test_write_configuration_failure():
    adapter, _ = make_adapter(lambda c, d: b"\x01")
    with pytest.raises(ZStackError):
        adapter.write_configuration(NvItem.PRECFGKEY, b"\x00")


def test_unknown_event():
    adapter, _ = make_adapter()
    with pytest.raises(ValueError):
        adapter.on("nonsense", print)


def test_data_confirm_event():
    adapter, _ = make_adapter()
    calls = recorder(adapter, "request_finished")
    adapter.handle_packet(Command.AF_DATA_CONFIRM, b"\x00\x01\x2a")
    assert calls == [(0x2A, 0)]


def test_incoming_message_event():
    adapter, _ = make_adapter()
    calls = recorder(adapter, "zcl_message")
    header = struct.pack("<HHHBBBBBIBB", 0, 0x0006, 0x1234, 1, 1, 0, 80, 0, 0, 5, 2)
    adapter.handle_packet(Command.AF_INCOMING_MSG, header + b"\xaa\xbb\xcc")
    assert calls == [(0x1234, 1, 0x0006, 80, b"\xaa\xbb")]


def test_extended_message_event_and_mode_filter():
    adapter, _ = make_adapter()
    calls = recorder(adapter, "raw_message")
    src = int.from_bytes(IEEE, "big")
    good = struct.pack("<HHBQBHBBBBIBH", 0, 0x1000, 3, src, 12, 0xFFFF, 12, 0, 90, 0, 0, 1, 1) + b"\x55"
    bad = struct.pack("<HHBQBHBBBBIBH", 0, 0x1000, 2, src, 12, 0xFFFF, 12, 0, 90, 0, 0, 1, 1) + b"\x55"
    adapter.handle_packet(Command.AF_INCOMING_MSG_EXT, bad)
    adapter.handle_packet(Command.AF_INCOMING_MSG_EXT, good)
    assert calls == [(IEEE, 0x1000, 90, b"\x55")]


def test_device_join_and_leave_events():
    adapter, _ = make_adapter()
    joined = recorder(adapter, "device_joined")
    left = recorder(adapter, "device_left")
    adapter.handle_packet(Command.ZDO_END_DEVICE_ANNCE_IND, b"\x00\x00" + b"\x34\x12" + ieee_to_wire(IEEE) + b"\x8e")
    adapter.handle_packet(Command.ZDO_LEAVE_IND, b"\x34\x12" + ieee_to_wire(IEEE) + b"\x00\x00\x00")
    assert joined == [(IEEE, 0x1234)]
    assert left == [(IEEE,)]


def test_zdo_message_events():
    adapter, _ = make_adapter()
    finished = recorder(adapter, "request_finished")
    zdo = recorder(adapter, "zdo_message")
    header = struct.pack("<HBHBBH", 0x1234, 0, 0x8005, 0, 17, 0)
    adapter.handle_packet(Command.ZDO_MSG_CB_INCOMING, header + b"\x00\x01")
    assert finished == [(17, 0)]
    assert zdo == [(0x1234, 0x8005, b"\x00\x01")]


def test_malformed_indication_is_ignored():
    adapter, _ = make_adapter()
    calls = recorder(adapter, "request_finished")
    adapter.handle_packet(Command.AF_DATA_CONFIRM, b"\x00")
    assert calls == []


def test_commissioning_ready():
    adapter, _ = make_adapter()
    ready = recorder(adapter, "coordinator_ready")
    adapter.handle_packet(Command.ZDO_STATE_CHANGE_IND, b"\x09")
    assert ready == []
    adapter.handle_packet(Command.APP_CNF_BDB_COMMISSIONING, b"\x00\x00\x01")
    assert ready == []
    adapter.handle_packet(Command.APP_CNF_BDB_COMMISSIONING, b"\x00\x00\x00")
    assert ready == [()]


class Coordinator:
    """Responder emulating a coordinator with stored NV items."""

    def __init__(self, product=0x01, stored=None):
        self.product = product
        self.stored = dict(stored or {})

    def __call__(self, command, data):
        if command == Command.SYS_VERSION:
            return bytes([2, self.product, 2, 7, 1]) + struct.pack("<I", 20230507)
        if command == Command.UTIL_GET_DEVICE_INFO:
            return b"\x00" + ieee_to_wire(IEEE) + b"\x00\x00"
        if command == Command.SYS_OSAL_NV_READ:
            item = struct.unpack("<H", data[:2])[0]
            value = self.stored.get(item, b"")
            return bytes([0, len(value)]) + value
        if command == Command.ZB_READ_CONFIGURATION:
            value = self.stored.get(data[0], b"")
            return bytes([0, data[0], len(value)]) + value
        if command == Command.SYS_OSAL_NV_WRITE:
            item = struct.unpack("<H", data[:2])[0]
            self.stored[item] = bytes(data[4:])
            return b"\x00"
        if command == Command.ZB_WRITE_CONFIGURATION:
            self.stored[data[0]] = bytes(data[2:])
            return b"\x00"
        return b"\x00"


def test_nv_items_wire_values():
    adapter, _ = make_adapter(pan_id=0x1A62, channel=11)
    assert adapter.nv_items[NvItem.PANID] == b"\x62\x1a"
    assert adapter.nv_items[NvItem.CHANLIST] == struct.pack("<I", 1 << 11)
    assert list(adapter.nv_items) == sorted(adapter.nv_items)


def test_start_coordinator_with_matching_configuration():
    endpoint = Endpoint(1, 0x0104, 0x0005, (0x0000,), (0x0006,))
    coordinator = Coordinator()
    adapter, transport = make_adapter(coordinator, endpoints=(endpoint,))
    coordinator.stored = {int(k): v for k, v in adapter.nv_items.items()}

    assert adapter.start_coordinator() is True
    assert adapter.version is ZStackVersion.ZSTACK_3X0
    assert adapter.model_name == "Z-Stack 3.x.0"
    assert adapter.manufacturer_name == "Texas Instruments"
    assert adapter.firmware == "20230507"
    assert adapter.ieee_address == IEEE

    commands = transport.commands()
    assert Command.SYS_OSAL_NV_WRITE not in commands
    assert commands.count(Command.APP_CNF_BDB_SET_CHANNEL) == 2
    assert commands.count(Command.ZDO_MSG_CB_REGISTER) == len(ZDO_CALLBACK_CLUSTERS)
    assert commands.count(Command.AF_REGISTER) == 1
    assert commands[-1] == Command.ZDO_STARTUP_FROM_APP


def test_start_coordinator_write_protected_mismatch():
    adapter, _ = make_adapter(Coordinator())
    with pytest.raises(ZStackError):
        adapter.start_coordinator()


def test_start_coordinator_rewrites_configuration():
    coordinator = Coordinator()
    adapter, transport = make_adapter(coordinator, write=True)

    assert adapter.start_coordinator() is False
    assert coordinator.stored[NvItem.STARTUP_OPTION] == b"\x03"
    assert transport.written[-1] == encode_frame(Command.SYS_RESET_REQ, b"\x01")

    assert adapter.start_coordinator() is True
    for item, value in adapter.nv_items.items():
        assert coordinator.stored[item] == value


def test_start_coordinator_12x_uses_configuration_for_key():
    coordinator = Coordinator(product=0x00)
    adapter, transport = make_adapter(coordinator, write=True)
    assert adapter.start_coordinator() is False
    assert adapter.start_coordinator() is True
    assert adapter.version is ZStackVersion.ZSTACK_12X
    commands = transport.commands()
    assert Command.ZB_WRITE_CONFIGURATION in commands
    assert Command.APP_CNF_BDB_SET_CHANNEL not in commands
    table = coordinator.stored[NvItem.TCLK_TABLE]
    assert table[8:24] == b"ZigBeeAlliance09"


def test_state_change_ready_on_12x():
    coordinator = Coordinator(product=0x00)
    adapter, _ = make_adapter(coordinator)
    coordinator.stored = {int(k): v for k, v in adapter.nv_items.items()}
    ready = recorder(adapter, "coordinator_ready")
    adapter.start_coordinator()
    adapter.handle_packet(Command.ZDO_STATE_CHANGE_IND, b"\x09")
    assert adapter.status == 9
    assert ready == [()]


def test_startup_failure_raises():
    base = Coordinator()

    def responder(command, data):
        if command == Command.ZDO_STARTUP_FROM_APP:
            return b"\x02"
        return base(command, data)

    adapter, _ = make_adapter(responder)
    base.stored = {int(k): v for k, v in adapter.nv_items.items()}
    with pytest.raises(ZStackError):
        adapter.start_coordinator()


def test_config_validation():
    with pytest.raises(ValueError):
        AdapterConfig(channel=5)
    with pytest.raises(ValueError):
        AdapterConfig(network_key=b"\x00")