import logging

from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import STORE_RETRY_ATTEMPTS, STORE_RETRY_MAX_WAIT_SECONDS
from ..errors import TransientStoreError

logger = logging.getLogger(__name__)


# Only for operations that are safe to repeat: heartbeats, answer upserts,
# offline/exit marks (all version-guarded) and submit (completion is a CAS).
retry_transient = retry(
    retry=retry_if_exception_type(TransientStoreError),
    stop=stop_after_attempt(STORE_RETRY_ATTEMPTS),
    wait=wait_exponential(multiplier=0.1, max=STORE_RETRY_MAX_WAIT_SECONDS),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
