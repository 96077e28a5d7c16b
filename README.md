# osprey

A small persistent key-value server. Values are binary-safe, keys carry
versions and optional expiry times, and every change is written to a
write-ahead log. The server checks every 30 seconds whether a snapshot of the
whole data set is due and takes one if so, so that after a restart it only
has to load the latest snapshot and replay the log written since.

It has no dependencies beyond the Python standard library (3.11 or later).

## Installing

```
pip install .
```

## Running the server

```
osprey --config osprey.toml
```

If the configuration file does not exist, built-in defaults are used. The
server listens on `0.0.0.0:7070` by default and keeps its files under
`./data`. A TOML configuration file overrides any of the defaults; a value of
the wrong type is rejected:

```toml
listen_addr = "127.0.0.1:7070"
max_clients = 10000
data_dir = "./data"
wal_max_bytes = 268435456
sync_policy = "batch"        # always | batch | os
max_key_bytes = 256
max_value_bytes = 16777216
enable_snapshot = true
busy_warn_ms = 50
sweep_interval_ms = 200
sweep_batch = 1000
log_level = "INFO"
log_file = ""                # defaults to <data_dir>/logs/osprey.log
slowlog_threshold_ms = 50
```

Logs go to standard error and to the log file. Stop the server with Ctrl-C or
SIGTERM; it then closes every connection, stops its background workers and
closes the write-ahead log.

While a snapshot is being written, mutating commands (`SET`, `DEL`, `EXPIRE`,
`INCR`, `DECR`, `MSET`) are answered with `ERR BUSY server is busy`. Expired
keys are removed when they are read and, in batches of `sweep_batch`, by a
background sweeper running every `sweep_interval_ms`.

## Command-line client

```
osprey-cli ping
osprey-cli set user:1 alice
osprey-cli set session:9 value EX 60000 NX
osprey-cli get user:1
osprey-cli incr visits 5
osprey-cli decr visits
osprey-cli expire user:1 30000
osprey-cli ttl user:1
osprey-cli mget user:1 user:2
osprey-cli del user:1
osprey-cli stats
```

`-addr host:port` chooses the server (default `localhost:7070`). `-in FILE`
reads a `set` value from a file, or from standard input if FILE is `-`; the
value argument is then left out. `-out FILE` writes a `get` value to a file.
The exit status is 1 on a usage error, a connection failure or an `ERR` reply.

`set` accepts these options after the value:

- `EX <ms>`: expire after this many milliseconds
- `PXAT <ms>`: expire at this Unix time in milliseconds
- `NX`: only set if the key does not exist
- `XX`: only set if the key already exists
- `VER <n>`: only set if the current version is `n`

## Using the client from Python

```python
from osprey.client import Client

with Client("localhost:7070") as client:
    client.ping()
    resp = client.set("user:1", b"alice", "EX", "60000")
    print(resp.success, resp.version)

    resp = client.get("user:1")
    if resp.success:
        print(resp.value, resp.version, resp.expiry_ms)

    print(client.incr("visits", 5).integer)
    print(client.ttl("user:1").ttl)
    print(client.mget("user:1", "missing"))
    print(client.delete("user:1").success)
    print(client.stats())
```

Each call returns a `Response` with `type`, `success`, `value`, `version`,
`expiry_ms`, `integer`, `ttl` and `error`. `ping()` raises `ClientError` if
the reply is not `PONG`; a closed connection or a malformed reply also raises
`ClientError`.

## Benchmarking

```
osprey-bench -op mixed -clients 10 -duration 10s
```

Options: `-addr`, `-op` (`set`, `get` or `mixed`), `-duration`, `-clients`,
`-key-size`, `-value-size`, `-keyspace` and `-report` (the reporting
interval). Durations are written like `500ms`, `10s` or `1m30s`. `get` and
`mixed` fill the key space before they start. The tool prints throughput once
per reporting interval and a summary at the end.

## Wire protocol

Each command is one line ending in `\r\n`; command names are case-insensitive.
`SET key <len> [options]` and `MSET k1 <len1> k2 <len2> ...` are followed by
their raw payload bytes (for `MSET`, all values concatenated) and a final
`\r\n`. The other commands are `PING`, `GET`, `DEL`, `EXISTS`,
`EXPIRE key <ms>`, `TTL`, `INCR key [delta]`, `DECR key [delta]`,
`MGET k1 k2 ...` and `STATS`.

Replies are `OK [version]`, `PONG`, `NOT_FOUND`,
`VALUE <len> <version> <expiry_ms>` followed by the payload,
`DELETED 0|1`, `EXISTS 0|1`, a bare integer (for `INCR`, `DECR` and `TTL`,
where `TTL` gives -1 for no expiry and -2 for a missing key), or
`ERR <code> <message>`. `MGET` answers each key with
`VALUE <key> <len> <version> <expiry_ms>` plus payload, or `NOT_FOUND <key>`.
`STATS` returns `name=value` lines ending with `END`.

Keys may not contain spaces or ASCII control characters.

## Files on disk

- `wal-NNNNNNNN.oswal`: write-ahead log segments, each record protected by CRC32C
- `snap-NNNNNNNN.osnap`: snapshots of the whole data set
- `MANIFEST.json`: names the current snapshot and the log segment to replay from

A corrupt or truncated record ends the replay of its log segment; the records
before it are kept.

## Modules

- `osprey.server`: the TCP server (`Server`) and the `osprey` command
- `osprey.client`: `Client` and `Response`
- `osprey.cli`, `osprey.bench`: the `osprey-cli` and `osprey-bench` commands
- `osprey.config`: `Config`, `default_config()` and `load_config()`
- `osprey.protocol`: the command `Parser` and the reply writers
- `osprey.store`: the in-memory `Store` with versions and expiry
- `osprey.persistent_store`: `PersistentStore`, which adds logging, recovery,
  the expiry sweeper and snapshots
- `osprey.wal`, `osprey.wal_manager`: log records, segments and rotation
- `osprey.snapshot`, `osprey.snapshot_manager`: snapshot files and the manifest
- `osprey.logger`: log set-up for the server

## What it does not do

There is no replication, authentication or eviction: every key stays in
memory until it is deleted or expires.