import pytest

from hfsc_qos.core.errors import InvalidCurveError
from hfsc_qos.core.models import PriorityClass
from hfsc_qos.core.shaping import buffer_packets, buffer_size, build_curve
from hfsc_qos.core.shaping.buffer import MAX_BUFFER_BYTES, MIN_BUFFER_BYTES


@pytest.mark.parametrize(
    "rate, rtt, expected",
    [
        (1000, 50, 9375),  # 50000 / 8 = 6250, +50%
        (100, 50, MIN_BUFFER_BYTES),
        (100000, 50, MAX_BUFFER_BYTES),
        (500, 20, 4096),
    ],
)
def test_buffer_size(rate, rtt, expected):
    assert buffer_size(rate, rtt) == expected


def test_buffer_size_is_monotonic():
    sizes = [buffer_size(rate) for rate in range(100, 50000, 250)]
    assert sizes == sorted(sizes)
    assert all(MIN_BUFFER_BYTES <= s <= MAX_BUFFER_BYTES for s in sizes)


def test_buffer_packets_rounds_up():
    assert buffer_packets(4096) == 3
    assert buffer_packets(1514) == 1
    assert buffer_packets(0) == 1


def test_strict_curve_doubles_for_ten_ms():
    curve = build_curve(100, PriorityClass.REALTIME_STRICT)
    assert curve.burst_rate_kbps == 200
    assert curve.burst_duration_ms == 10
    assert curve.sustained_rate_kbps == 100


def test_burstable_curve():
    curve = build_curve(500, PriorityClass.REALTIME_BURSTABLE)
    assert curve.burst_rate_kbps == 750
    assert curve.burst_duration_ms == 20

    odd = build_curve(125, "interactive")
    assert odd.burst_rate_kbps == 187.5


@pytest.mark.parametrize("priority", [PriorityClass.SHARED, PriorityClass.BULK])
def test_non_realtime_curve_has_no_burst(priority):
    curve = build_curve(250, priority)
    assert not curve.has_burst
    assert curve.as_dict() == {"sustained_kbps": 250}


@pytest.mark.parametrize("rate", [0, -5, None])
def test_curve_rejects_non_positive_rate(rate):
    with pytest.raises(InvalidCurveError) as excinfo:
        build_curve(rate, PriorityClass.SHARED, tier_id=300)
    assert excinfo.value.tier_id == 300
    assert str(excinfo.value).startswith("tier 300:")
