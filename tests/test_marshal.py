from concurrent.futures import ThreadPoolExecutor

import pytest

from replidb.marshal import (
    RequestMarshaler,
    gz_compress,
    gz_uncompress,
    marshal_command,
    marshal_load_request,
    marshal_noop,
    marshaler_stats,
    unmarshal_command,
    unmarshal_load_request,
    unmarshal_noop,
    unmarshal_sub_command,
)
from replidb.messages import (
    Command,
    CommandType,
    LoadRequest,
    Noop,
    QueryRequest,
    Request,
    Statement,
)

SQL = """INSERT INTO "names" VALUES(1,'bob','123-45-678')"""


def make_request():
    return QueryRequest(
        request=Request(statements=[Statement(sql=SQL)]),
        timings=True,
        freshness=100,
    )


def test_new_request_marshaler_defaults():
    rm = RequestMarshaler()
    assert rm.stats() == {
        "compression_size": 150,
        "compression_batch": 5,
        "force_compression": False,
    }


def test_marshal_uncompressed():
    rm = RequestMarshaler()
    r = make_request()
    b, comp = rm.marshal(r)
    assert comp is False

    c = Command(type=CommandType.QUERY, sub_command=b, compressed=comp)
    nc = unmarshal_command(marshal_command(c))
    assert nc.type == CommandType.QUERY
    assert nc.compressed is False

    nr = unmarshal_sub_command(nc, QueryRequest)
    assert nr.timings == r.timings
    assert nr.freshness == r.freshness
    assert len(nr.request.statements) == 1
    assert nr.request.statements[0].sql == SQL


@pytest.mark.parametrize("attr", ["batch_threshold", "size_threshold"])
def test_marshal_compressed(attr):
    rm = RequestMarshaler(force_compression=True)
    setattr(rm, attr, 1)
    r = make_request()
    b, comp = rm.marshal(r)
    assert comp is True

    c = Command(type=CommandType.QUERY, sub_command=b, compressed=comp)
    nc = unmarshal_command(marshal_command(c))
    assert nc.type == CommandType.QUERY
    assert nc.compressed is True
    assert unmarshal_sub_command(nc, QueryRequest) == r


@pytest.mark.parametrize("attr", ["batch_threshold", "size_threshold"])
def test_marshal_wont_compress(attr):
    rm = RequestMarshaler()
    setattr(rm, attr, 1)
    _, comp = rm.marshal(make_request())
    assert comp is False


def test_marshal_compressed_concurrent():
    rm = RequestMarshaler(size_threshold=1, force_compression=True)
    r = make_request()
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: rm.marshal(r), range(100)))
    assert all(comp for _, comp in results)


def test_stats_counters_increase():
    before = marshaler_stats()
    RequestMarshaler().marshal(make_request())
    after = marshaler_stats()
    assert after["num_requests"] == before["num_requests"] + 1
    assert after["num_uncompressed_requests"] == before["num_uncompressed_requests"] + 1


def test_noop_round_trip():
    assert unmarshal_noop(marshal_noop(Noop(id="1"))) == Noop(id="1")


def test_load_request_round_trip():
    lr = LoadRequest(data=b"SQLite format 3\x00" * 4)
    b = marshal_load_request(lr)
    assert gz_uncompress(b) != b
    assert unmarshal_load_request(b) == lr


def test_gz_round_trip_and_error():
    assert gz_uncompress(gz_compress(b"hello")) == b"hello"
    with pytest.raises(ValueError):
        gz_uncompress(b"not gzip")


def test_sub_command_bad_compression():
    c = Command(type=CommandType.QUERY, sub_command=b"junk", compressed=True)
    with pytest.raises(ValueError, match="unmarshal sub uncompress"):
        unmarshal_sub_command(c, QueryRequest)