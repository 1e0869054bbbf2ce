# replidb

`replidb` is the storage layer of a small replicated relational database built
on SQLite. It has no third-party dependencies.

## Modules

- **`replidb.database`**: `open_database(path, fk_enabled)` and
  `open_in_memory(fk_enabled)` return a `Database` that has one read-write and
  one read-only SQLite connection. `Database.execute(request, timings)` runs
  statements that change data and returns one `ExecuteResult` per statement.
  `Database.query(request, timings)` runs read-only statements and returns
  `QueryRows`. A statement that would write through `query` fails with
  `"attempt to change database via query operation"`. The class also has
  `backup(path)`, `copy(destination)`, `serialize()`, `dump(writer)` (SQL text),
  `size()`, `file_size()`, `compile_options()`, `connection_pool_stats("ro" | "rw")`
  and `stats()`. `load_into_memory(path, fk_enabled)` and
  `deserialize_into_memory(data, fk_enabled)` build in-memory copies.
  `db_stats()` returns the module's execution and query counters.
- **`replidb.messages`**: the message dataclasses `Parameter`, `Statement`,
  `Request`, `QueryRequest`, `ExecuteRequest`, `LoadRequest`, `Noop`,
  `Command` (with `CommandType`), `ExecuteResult`, `Values` and `QueryRows`.
  `encode_message` and `decode_message` give each message a compact binary wire
  form. Bad input raises `DecodeError`.
- **`replidb.marshal`**: `RequestMarshaler.marshal(requester)` encodes a
  request and gzip-compresses it when the batch reaches `batch_threshold`
  (default 5) or a statement reaches `size_threshold` characters (default 150).
  Compressed output is kept only if it is smaller, unless `force_compression`
  is set. It returns `(data, compressed)`. The module also has helpers for
  commands, no-ops, load requests (always compressed) and
  `unmarshal_sub_command`, and `marshaler_stats()` returns its counters.
- **`replidb.rewrite`**: `rewrite(statements, rewrite_random)` replaces
  `RANDOM()` calls with random integer literals in place, so every replica
  stores the same values. `ORDER BY RANDOM()` is left alone.
- **`replidb.encoding`**: `Encoder.json_marshal(obj)` and
  `Encoder.json_marshal_indent(obj, prefix, indent)` turn results, rows and
  lists of them into JSON strings. The output is positional by default and
  keyed by column with `Encoder(associative=True)`. Empty fields are omitted.
  Rows whose column and type counts differ raise `TypesColumnsLengthError`.
- **`replidb.dbvalues`**: `parameters_to_values`, `normalize_row_values`,
  `is_text_type` and `random_string` convert between message parameters and
  SQLite values.
- **`replidb.disco`**: `Service(client, store)` works with a discovery `Client`
  and a consensus `Store`. Both are abstract base classes you implement.
  `register(node_id, api_addr, addr)` blocks until this node becomes leader or
  learns of one. `start_reporting(...)` reports leadership from a background
  thread until the returned `threading.Event` is set.

## Example

```python
from replidb.database import open_in_memory
from replidb.encoding import Encoder
from replidb.messages import Parameter, Request, Statement

db = open_in_memory(False)
db.execute_string_stmt("CREATE TABLE foo (id INTEGER NOT NULL PRIMARY KEY, name TEXT)")

request = Request(statements=[
    Statement(sql="INSERT INTO foo(name) VALUES(?)", parameters=[Parameter(value="fiona")]),
])
print(Encoder().json_marshal(db.execute(request, False)))
# [{"last_insert_id":1,"rows_affected":1}]

rows = db.query_string_stmt("SELECT * FROM foo")
print(Encoder(associative=True).json_marshal(rows))
# [{"types":{"id":"integer","name":"text"},"rows":[{"id":1,"name":"fiona"}]}]

db.close()
```

An error in a single statement does not raise. It is reported in the `error`
field of that statement's result. Failures of the database itself raise
`DatabaseError`.

## What this package does not do

This package has no network API, no command-line shell and no consensus or
replication engine. It does not ship a concrete discovery backend either: you
supply your own `Client` and `Store` implementations for `replidb.disco`.

## Running the tests

```
pip install -e ".[test]"
pytest
```