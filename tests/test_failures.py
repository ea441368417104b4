from xenoflow.core.errors import ToolFailure, TransientFailure
from xenoflow.core.failures import classify_failure


def _classify(**overrides):
    kwargs = dict(
        exit_code=0,
        stderr_tail="",
        preempted=False,
        timed_out=False,
        missing_outputs=[],
        preempted_exit_codes=(143,),
    )
    kwargs.update(overrides)
    return classify_failure(**kwargs)


def test_success_is_not_a_failure():
    assert _classify() is None


def test_timeout_is_transient():
    result = _classify(exit_code=None, timed_out=True)
    assert result.retryable
    assert not result.resource_exhausted


def test_backend_preemption_flag_is_transient():
    assert _classify(exit_code=None, preempted=True).retryable


def test_preemption_exit_code_is_transient():
    result = _classify(exit_code=143)
    assert result.retryable
    assert "143" in result.reason


def test_preemption_message_is_transient():
    result = _classify(exit_code=1, stderr_tail="Worker lost: instance was terminated")
    assert result.retryable
    assert result.matched_pattern == "instance was terminated"


def test_resource_exhaustion_is_transient_with_feedback():
    result = _classify(exit_code=1, stderr_tail="write failed: No space left on device")
    assert result.retryable
    assert result.resource_exhausted
    error = result.to_error("sort", 1)
    assert isinstance(error, TransientFailure)
    assert error.resource_exhausted


def test_other_exit_codes_are_tool_failures():
    result = _classify(exit_code=1, stderr_tail="[E::hts_open] fail to open file")
    assert not result.retryable
    error = result.to_error("sort", 1)
    assert isinstance(error, ToolFailure)
    assert error.exit_code == 1


def test_missing_outputs_are_tool_failures():
    result = _classify(missing_outputs=["bam"])
    assert not result.retryable
    assert "bam" in result.reason
