from bioauth.core.detector import run_poll_loop
from bioauth.observability.logging import log


def poll_operation_job(operation_id: str):
    """
    Background job owning the polling task for one operation. The loop is
    bounded and ends every exit path with a settled (or cancelled) record.
    """
    try:
        log(event="poll_job_start", operationId=operation_id)
        op = run_poll_loop(operation_id)
        log(event="poll_job_done", operationId=operation_id, state=op.state, outcome=op.outcome, polls=op.pollCount)
        return op.state
    except Exception as e:
        log(event="poll_job_exception", operationId=operation_id, error=str(e))
        raise
