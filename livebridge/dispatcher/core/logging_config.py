from livebridge.common.core.logging_config import configure_queue_logging
from livebridge.common.core.logging_config import setup_logging as common_setup_logging

from ..config import DispatcherConfig


def setup_logging(config: DispatcherConfig):
    """
    Load the YAML config and initialize logging.
    Also configure async log delivery when a sink URL is set.
    """
    common_setup_logging(config.LOG_CONFIG_PATH)
    return configure_queue_logging(service_name="livebridge-dispatcher", sink_url=config.LOG_SINK_URL)
