from .common import *  # noqa
from .production import *  # noqa
from .feedback import *  # noqa
from .audit import *  # noqa

from app.events.outbox import OutboxEvent  # noqa: F401
