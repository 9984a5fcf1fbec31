from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models to register tables
from .rooms import Room  # noqa: F401,E402
from .attachments import Attachment  # noqa: F401,E402
