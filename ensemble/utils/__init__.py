from .event_logger import EventLogger
from .ports import get_random_port, is_port_available
