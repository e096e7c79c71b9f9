import pytest

from wgpu_bench.timing import MAX_TIMED_PASSES, TimingHelper, TimingState

from .conftest import FAKE_TIMESTAMP_STEP_NS, FakeDevice


def _run_passes(device, helper, count):
    encoder = device.create_command_encoder()
    for i in range(count):
        compute_pass = helper.begin_compute_pass(encoder, f"pass {i}")
        compute_pass.end()
    device.queue.submit([encoder.finish()])


def test_durations_per_pass(fake_device):
    helper = TimingHelper(fake_device, 3)
    assert helper.enabled
    _run_passes(fake_device, helper, 3)
    assert helper.state == TimingState.WAIT_FOR_RESULT
    assert helper.get_result() == [FAKE_TIMESTAMP_STEP_NS] * 3
    assert helper.state == TimingState.FREE


def test_timestamp_writes_are_paired(fake_device):
    helper = TimingHelper(fake_device, 2)
    encoder = fake_device.create_command_encoder()
    first = helper.begin_compute_pass(encoder, "a")
    assert first.timestamp_writes["beginning_of_pass_write_index"] == 0
    assert first.timestamp_writes["end_of_pass_write_index"] == 1
    first.end()
    second = helper.begin_compute_pass(encoder, "b")
    assert second.timestamp_writes["beginning_of_pass_write_index"] == 2
    second.end()
    kinds = [c[0] for c in encoder.commands]
    assert kinds == ["resolve", "copy"]


def test_reusable_after_result(fake_device):
    helper = TimingHelper(fake_device, 1)
    _run_passes(fake_device, helper, 1)
    helper.get_result()
    _run_passes(fake_device, helper, 1)
    assert helper.get_result() == [FAKE_TIMESTAMP_STEP_NS]


def test_too_many_passes(fake_device):
    helper = TimingHelper(fake_device, 1)
    encoder = fake_device.create_command_encoder()
    helper.begin_compute_pass(encoder).end()
    with pytest.raises(RuntimeError):
        helper.begin_compute_pass(encoder)


def test_result_before_resolve(fake_device):
    helper = TimingHelper(fake_device, 2)
    with pytest.raises(RuntimeError, match="No timing result"):
        helper.get_result()


def test_query_set_limit(fake_device):
    with pytest.raises(ValueError):
        TimingHelper(fake_device, MAX_TIMED_PASSES + 1)


def test_without_timestamp_feature():
    device = FakeDevice(features=())
    helper = TimingHelper(device, 2)
    assert not helper.enabled
    encoder = device.create_command_encoder()
    compute_pass = helper.begin_compute_pass(encoder, "plain")
    assert compute_pass.timestamp_writes is None
    assert helper.get_result() == [0, 0]


def test_destroy(fake_device):
    helper = TimingHelper(fake_device, 1)
    query_set = helper._query_set
    helper.destroy()
    assert query_set.destroyed
    assert not helper.enabled
