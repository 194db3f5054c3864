from sqlalchemy import Column, DateTime, Integer, String, Text, func

from scriptclient.database import Base


class SessionEvent(Base):
    """
    Lifecycle event recorded for one client session (one run of a client).
    """

    __tablename__ = "session_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, nullable=False, index=True)
    timestamp = Column(DateTime, default=func.now(), index=True)
    level = Column(String, default="INFO")
    category = Column(String, default="STATE")  # STATE/TCP/TLS/PAYLOAD/CONSOLE/SIGNAL
    message = Column(Text, nullable=False)
