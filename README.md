# znpadapter

Host-side support for Zigbee coordinators running Z-Stack firmware and
speaking the ZNP serial protocol.

## Modules

### `znpadapter.protocol`

Identifiers and packed message layouts:

- `Command` – ZNP command codes (requests, replies and indications).
- `NvItem` – non-volatile configuration item identifiers.
- `ZStackVersion` – firmware family; its value is the model name
  (`"Z-Stack 3.x.0"`, `"Z-Stack 3.0.x"`, `"Z-Stack 1.2.x"`).
- `AddressMode` – `GROUP`, `SHORT` and `IEEE` addressing.
- Requests with a `pack()` method: `DataRequest`, `ExtendedRequest`,
  `RegisterEndpoint`, `PermitJoinRequest`. Values that do not fit their
  fields raise `ValueError`.
- Replies and indications with an `unpack(data)` class method:
  `VersionInfo` (with a `stack_version` property), `DataConfirm`,
  `IncomingMessage`, `ExtendedMessage` (with an `ieee_address` property),
  `ZdoMessage` (with a `status` property), `DeviceLeave`, `DeviceAnnounce`.
  Data that is too short raises `ValueError`.
- `ieee_from_wire(data)` and `ieee_to_wire(address)` convert an 8-byte IEEE
  address between the little-endian wire order and big-endian display order.

### `znpadapter.framing`

- `encode_frame(command, data=b"")` builds a frame: flag `0xFE`, length,
  big-endian command, data and an XOR checksum. It raises `FrameError` when
  the data is longer than 255 bytes or the command does not fit in 16 bits.
- `checksum(data)` is the XOR of all bytes.
- `Frame(command, data)` holds one packet; `Frame.encode()` builds its bytes.
- `FrameDecoder.feed(data)` adds received bytes and returns the completed
  `Frame` objects. Corrupt input is not raised as an error: a buffer that
  does not start with the flag, or a frame whose checksum fails, is
  discarded (the latter with a logged warning). `FrameDecoder.clear()`
  empties the buffer.

```python
from znpadapter.framing import FrameDecoder, encode_frame
from znpadapter.protocol import Command

frame = encode_frame(Command.SYS_VERSION)

decoder = FrameDecoder()
for received in decoder.feed(frame):
    print(hex(received.command), received.data.hex())
```

### `znpadapter.adapter`

`ZStackAdapter(transport, config=None)` drives a coordinator over a
transport object that has `write(data)` and `read(timeout)` methods.
`AdapterConfig` sets the channel (11–26), PAN ID, network key, default key,
TX power, permit-join address, whether the stored configuration may be
rewritten (`write`), the reset delay, the request timeout and the
`Endpoint` definitions to register.

- `send_request(command, data=b"")` writes a frame and reads from the
  transport until the matching reply arrives, returning its data; it raises
  `ZStackTimeout` when none arrives in time.
- `feed(data)` passes received bytes in; `handle_packet(command, data)`
  handles one packet.
- `on(event, callback)` registers a callback for one of `request_finished`,
  `zcl_message`, `raw_message`, `zdo_message`, `device_joined`,
  `device_left` and `coordinator_ready`; any other name raises `ValueError`.
- `unicast_request`, `multicast_request`, `unicast_inter_pan_request`,
  `broadcast_inter_pan_request`, `set_inter_pan_channel`, `permit_join`,
  `write_nv_item` and `write_configuration` return `None` and raise
  `ZStackError` when the coordinator reports a non-zero status (or
  `ZStackTimeout` when it does not answer). `reset_inter_pan_channel` only
  logs a failure.
- `start_coordinator()` reads the firmware version and IEEE address, checks
  the stored NV items against the configuration, registers ZDO callbacks and
  endpoints, and requests network startup. It returns `True` when startup
  was requested, or `False` when the stored configuration differed and the
  adapter was reset to rewrite it (only allowed when `write` is set;
  otherwise `ZStackError` is raised). A `SYS_RESET_IND` indication runs it
  again.
- `soft_reset()` sends the bootloader-skip byte and a reset request.

```python
from znpadapter.adapter import AdapterConfig, Endpoint, ZStackAdapter

config = AdapterConfig(
    channel=15,
    endpoints=(Endpoint(0x01, 0x0104, 0x0005, in_clusters=(0x0000, 0x0006)),),
)
adapter = ZStackAdapter(transport, config)
adapter.on("device_joined", lambda ieee, nwk: print(ieee.hex(":"), hex(nwk)))
adapter.start_coordinator()
adapter.permit_join(True)
```

## What it does not do

The package has no command-line program and does not open a serial port
itself: the caller supplies the transport. It keeps no device database and
does not interpret ZCL or ZDO payloads beyond passing them to callbacks.

## Installation and tests

```
pip install .
pip install .[test]
pytest
```