import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import pytest

from threephase.rpc import ClientEnd, Network, RPCFailed, RPCServer, Service


@dataclass
class JunkArgs:
    x: int = 0


@dataclass
class JunkReply:
    x: str = ""


class JunkServer:
    def __init__(self):
        self.mu = threading.Lock()
        self.log1 = []
        self.log2 = []
        self.release = threading.Event()

    def handler1(self, args):
        with self.mu:
            self.log1.append(args)
            return int(args)

    def handler2(self, args):
        with self.mu:
            self.log2.append(args)
            return f"handler2-{args}"

    def handler3(self, args):
        self.release.wait(20)
        return -args

    def handler4(self, args):
        return JunkReply(x=f"dataclass-{args.x}")

    def handler6(self, args):
        with self.mu:
            return len(args)

    def handler7(self, args):
        with self.mu:
            return "y" * args

    def ping(self):
        return "pong"


def make_setup(servername="server99"):
    net = Network()
    js = JunkServer()
    rs = RPCServer()
    rs.add_service(Service(js))
    net.add_server(servername, rs)
    return net, js


def connected_end(net, endname, servername):
    end = net.make_end(endname)
    net.connect(endname, servername)
    net.enable(endname, True)
    return end


def test_basic():
    net, _ = make_setup()
    with net:
        end = connected_end(net, "end1-99", "server99")
        assert end.call("JunkServer.handler2", 111) == "handler2-111"
        assert end.call("JunkServer.handler1", "9099") == 9099


def test_types():
    net, _ = make_setup()
    with net:
        end = connected_end(net, "end1-99", "server99")
        reply = end.call("JunkServer.handler4", JunkArgs(7))
        assert reply == JunkReply(x="dataclass-7")


def test_handler_without_arguments():
    net, _ = make_setup()
    with net:
        end = connected_end(net, "e", "server99")
        assert end.call("JunkServer.ping", None) == "pong"


def test_disconnect():
    net, js = make_setup()
    with net:
        end = net.make_end("end1-99")
        net.connect("end1-99", "server99")
        with pytest.raises(RPCFailed):
            end.call("JunkServer.handler2", 111)
        assert js.log2 == []
        net.enable("end1-99", True)
        assert end.call("JunkServer.handler1", "9099") == 9099


def test_counts():
    net, _ = make_setup(99)
    with net:
        end = connected_end(net, "end1-99", 99)
        for i in range(17):
            assert end.call("JunkServer.handler2", i) == f"handler2-{i}"
        assert net.get_count(99) == 17
        assert net.total_count() == 17


def test_bytes():
    net, _ = make_setup(99)
    with net:
        end = connected_end(net, "end1-99", 99)
        for _ in range(17):
            args = "x" * 71
            args = args + args
            args = args + args
            assert end.call("JunkServer.handler6", args) == len(args)
        n = net.total_bytes()
        assert 4828 <= n <= 6000

        for _ in range(17):
            assert len(end.call("JunkServer.handler7", 107)) == 107
        nn = net.total_bytes() - n
        assert 1800 <= nn <= 2500


def test_concurrent_many():
    net, _ = make_setup(1000)
    nclients, nrpcs = 20, 10

    def client(i):
        end = connected_end(net, i, 1000)
        done = 0
        for j in range(nrpcs):
            arg = i * 100 + j
            assert end.call("JunkServer.handler2", arg) == f"handler2-{arg}"
            done += 1
        return done

    with net, ThreadPoolExecutor(max_workers=nclients) as pool:
        total = sum(pool.map(client, range(nclients)))
    assert total == nclients * nrpcs
    assert net.get_count(1000) == total


def test_concurrent_one():
    net, js = make_setup(1000)
    nrpcs = 20
    with net:
        end = connected_end(net, "c", 1000)

        def one(i):
            arg = 100 + i
            assert end.call("JunkServer.handler2", arg) == f"handler2-{arg}"
            return 1

        with ThreadPoolExecutor(max_workers=nrpcs) as pool:
            total = sum(pool.map(one, range(nrpcs)))
    assert total == nrpcs
    assert len(js.log2) == nrpcs
    assert net.get_count(1000) == total


def test_regression1():
    net, js = make_setup(1000)
    nrpcs = 20
    with net:
        end = net.make_end("c")
        net.connect("c", 1000)
        net.enable("c", False)

        def disabled(i):
            try:
                end.call("JunkServer.handler2", 100 + i)
            except RPCFailed:
                return False
            return True

        with ThreadPoolExecutor(max_workers=nrpcs) as pool:
            futures = [pool.submit(disabled, i) for i in range(nrpcs)]
            time.sleep(0.1)
            t0 = time.monotonic()
            net.enable("c", True)
            assert end.call("JunkServer.handler2", 99) == "handler2-99"
            duration = time.monotonic() - t0
            results = [f.result() for f in futures]

    assert duration < 0.05
    assert results == [False] * nrpcs
    assert js.log2 == [99]
    assert net.get_count(1000) == 1


def test_killed():
    net, js = make_setup()
    with net:
        end = connected_end(net, "end1-99", "server99")
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(end.call, "JunkServer.handler3", 99)
            time.sleep(0.5)
            assert not future.done()

            net.delete_server("server99")
            with pytest.raises(RPCFailed):
                future.result(timeout=1.0)
        finally:
            js.release.set()
            pool.shutdown()


def test_many_sequential_calls():
    net, _ = make_setup()
    with net:
        end = connected_end(net, "end1-99", "server99")
        replies = {end.call("JunkServer.handler2", 111) for _ in range(1000)}
    assert replies == {"handler2-111"}
    assert net.get_count("server99") == 1000


def test_callbacks_see_method_and_end():
    net, _ = make_setup()
    seen = []
    net.register_callback(lambda method, endname: seen.append((method, endname)))
    with net:
        end = connected_end(net, "e", "server99")
        end.call("JunkServer.handler2", 1)
    assert seen == [("JunkServer.handler2", "e")]


def test_callback_can_disable_end():
    net, js = make_setup()
    net.register_callback(lambda method, endname: net.enable(endname, False))
    with net:
        end = connected_end(net, "e", "server99")
        with pytest.raises(RPCFailed):
            end.call("JunkServer.handler2", 1)
    assert js.log2 == []


def test_callbacks_skipped_when_disabled():
    net, _ = make_setup()
    seen = []
    net.register_callback(lambda method, endname: seen.append(method))
    with net:
        end = net.make_end("e")
        net.connect("e", "server99")
        with pytest.raises(RPCFailed):
            end.call("JunkServer.handler2", 1)
    assert seen == []


def test_unknown_method_raises():
    net, _ = make_setup()
    with net:
        end = connected_end(net, "e", "server99")
        with pytest.raises(LookupError):
            end.call("JunkServer.nothing", 1)
        with pytest.raises(LookupError):
            end.call("Nobody.handler2", 1)


def test_make_end_twice_raises():
    with Network() as net:
        net.make_end("a")
        with pytest.raises(ValueError):
            net.make_end("a")


def test_cleanup_fails_calls():
    net, _ = make_setup()
    end = connected_end(net, "e", "server99")
    net.cleanup()
    with pytest.raises(RPCFailed):
        end.call("JunkServer.handler2", 1)
    assert net.total_count() == 0


def test_get_count_of_deleted_server_raises():
    net, _ = make_setup()
    with net:
        net.delete_server("server99")
        with pytest.raises(KeyError):
            net.get_count("server99")


def test_service_method_table():
    service = Service(JunkServer(), name="Junk")
    assert service.name == "Junk"
    assert "handler2" in service.methods
    assert "ping" in service.methods
    assert not any(name.startswith("_") for name in service.methods)


def test_make_end_returns_client_end():
    with Network() as net:
        end = net.make_end("x")
        assert isinstance(end, ClientEnd) and end.endname == "x"