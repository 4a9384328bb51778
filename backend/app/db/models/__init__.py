from .common import *  # noqa
from .sales import *  # noqa
from .purchasing import *  # noqa
from .inventory import *  # noqa
from .security_audit import *  # noqa

# Platform event-bus table (transactional outbox)
from app.events.outbox import *  # noqa
