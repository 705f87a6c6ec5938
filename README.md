# oplogrelay

A library for moving MongoDB oplog entries from a collector to a receiver.

Batches of raw BSON oplog entries travel as tunnel messages. A message
carries a checksum, a tag, a shard number and the id of the compressor
used on its entries. The package provides:

- **Oplog helpers** (`oplogrelay.oplog`): `PartialLog`, `new_partial_log()`,
  the document helpers `get_key`, `get_key_with_index`, `set_field`,
  `remove_field` and `convert_doc_to_map`, and the `PrimaryKeyHasher`
  and `TableHasher` whose `distribute()` decides which worker gets each
  entry.
- **Tunnel messages** (`oplogrelay.message`): `TMessage` with `crc32()`,
  `to_bytes()` and `approximate_size()`, and `decode_message()` to read
  the big-endian wire form back. `MessageTag` holds the tag bits and
  `Reply` the reply codes (errors are negative).
- **Compression and checksums** (`oplogrelay.compression`,
  `oplogrelay.checksum`): gzip, zlib, raw deflate and pass-through
  ("snappy") compressors, looked up with `get_compressor_by_name()` or
  `get_compressor_by_id()`; `CompressionModule` and
  `ChecksumCalculator` apply them to a whole message.
- **Batch planning** (`oplogrelay.collision`, `oplogrelay.combiner`):
  `BarrierMatrix` splits a batch into segments whose unique-index writes
  cannot collide, and `LogsGroupCombiner` merges neighbouring records of
  the same namespace and operation into groups of bounded count and size.
- **Command helpers** (`oplogrelay.commands`): `extract_command_name()`,
  `is_sync_data_command()`, `is_run_on_admin_command()`,
  `lookup_op_name()`, `build_metadata()` and `should_skip_error()`.
- **Tunnels** (`oplogrelay.datafile`, `oplogrelay.tcp`): a data-file
  tunnel (`FileWriter`, `FileReader`, with `write_block()` and
  `read_blocks()` for the block format) and a two-socket TCP tunnel
  (`TCPWriter`, `TCPReader`) whose acknowledgement channel listens on the
  port one above the message port.
- **Replaying** (`oplogrelay.replayer`): `ExampleReplayer` verifies
  checksums, decompresses entries, decodes them on a worker thread and
  keeps the timestamp of the newest entry in `ack`.
- **Kafka addresses** (`oplogrelay.kafka_address`): `parse_address()`
  splits `topic@broker1,broker2` into a topic (default `mongoshake`) and
  a broker list.

## Installation

```
pip install .
```

Python 3.10 or later is required.

## Example: a message round trip

```python
from oplogrelay.checksum import ChecksumCalculator
from oplogrelay.compression import CompressionModule, get_compressor_by_id
from oplogrelay.message import TMessage, decode_message

message = TMessage(raw_logs=[b"entry-1", b"entry-2"])
module = CompressionModule("gzip")
assert module.install()
module.handle(message)                # compresses every entry, sets message.compress
ChecksumCalculator().handle(message)  # sets message.checksum

received = decode_message(message.to_bytes())
assert received.crc32() == received.checksum
codec = get_compressor_by_id(received.compress)
assert [codec.decompress(raw) for raw in received.raw_logs] == [b"entry-1", b"entry-2"]
```

## Example: the TCP tunnel

```python
import bson
from oplogrelay.message import TMessage
from oplogrelay.replayer import ExampleReplayer
from oplogrelay.tcp import TCPReader, TCPWriter

with ExampleReplayer() as replayer, TCPReader("127.0.0.1:0") as reader:
    reader.link([replayer])
    with TCPWriter(f"127.0.0.1:{reader.port}") as writer:
        entry = bson.encode({"ts": 5, "op": "i", "ns": "db.coll", "o": {"_id": 1}})
        writer.send(TMessage(raw_logs=[entry]))
```

Give port 0 to `TCPReader` to let it pick a free pair of adjacent ports;
`reader.port` then holds the message port.

## Inspecting an ObjectId

```
oplogrelay-objectid 5d2f1c3a9b1e8a0a1c2b3d4e
```

prints the timestamp, machine, process id and counter packed into the id.
`describe_object_id()` in `oplogrelay.objectid_tool` returns the same text.

## What the package does not do

- There is no receiver command that reads a configuration file and
  starts a tunnel reader; wire a `TCPReader` or `FileReader` to
  `ExampleReplayer` instances in your own code, as above.
- It does not write replayed entries to a MongoDB server. The collision
  and grouping helpers plan the batches, but no writer executes them.
- It does not talk to Kafka; only the address format is parsed.

## Running the tests

```
pip install ".[test]"
pytest
```