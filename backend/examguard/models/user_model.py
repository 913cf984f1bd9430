from ..db import Base
from sqlalchemy import Column, String
from fastapi_users.db import SQLAlchemyBaseUserTableUUID


class User(SQLAlchemyBaseUserTableUUID, Base):
    """Instructor account. Students never log in; they are identified by name per exam."""
    __tablename__ = "users"
    full_name = Column(String)
