import logging
import socket

from openagent.env import Env, TraceOptions


def test_trace_options_defaults():
    options = Env().trace_options()
    assert options == TraceOptions(
        onoff=0,
        top_n=5,
        max_hop=30,
        measurement=3,
        syn_port=-1,
        timeout=-1,
        parallel=1,
        channel_size=1000,
        channel_limit_percent=70,
        logger=None,
    )


def test_trace_options_from_config():
    config = {
        "traceRoute": "1",
        "traceTopN": 10,
        "traceMaxHop": "15",
        "traceTcpSynPort": 443,
        "traceChannelLimitPercent": "90",
    }
    options = Env(config=config).trace_options()
    assert options.onoff == 1
    assert options.top_n == 10
    assert options.max_hop == 15
    assert options.syn_port == 443
    assert options.channel_limit_percent == 90
    assert options.parallel == 1
    assert options.measurement == 3


def test_trace_options_bad_value_uses_default():
    options = Env(config={"traceMaxHop": "many"}).trace_options()
    assert options.max_hop == 30


def test_trace_options_carry_logger():
    logger = logging.getLogger("openagent.test")
    env = Env(logger=logger)
    assert env.trace_options().logger is logger


def test_host_name_defaults_to_system():
    assert Env().host_name == socket.gethostname()


def test_missing_options_read_as_zero_values():
    env = Env(k8s=True, public_ip="10.0.0.1")
    assert env.int_options["missing"] == 0
    assert env.string_options["missing"] == ""
    env.int_options["interval"] = 5
    env.string_options["mode"] = "fast"
    assert env.int_options["interval"] == 5
    assert env.string_options["mode"] == "fast"
    assert env.k8s is True
    assert env.public_ip == "10.0.0.1"


def test_options_not_shared_between_instances():
    first = Env()
    second = Env()
    first.int_options["x"] = 1
    assert "x" not in second.int_options