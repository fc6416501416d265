"""
Property model — only the ownership columns the eligibility filter needs.
"""
from sqlalchemy import Column, Text, DateTime
from sqlalchemy.sql import func

from leadengine.database import Base


class Property(Base):
    __tablename__ = 'properties'

    id = Column(Text, primary_key=True)
    title = Column(Text, default='')
    team_id = Column(Text, nullable=True)
    capturer_realtor_id = Column(Text, nullable=True)  # realtor who captured the listing
    owner_realtor_id = Column(Text, nullable=True)     # realtor linked by the owner
    created_at = Column(DateTime, server_default=func.now())
