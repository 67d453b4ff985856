from sqlalchemy import ForeignKey, Column, Integer, String, DateTime, Text, Float, Boolean, JSON
from sqlalchemy import UniqueConstraint
from app.db.database import Base
import datetime
import uuid


def new_id() -> str:
    return str(uuid.uuid4())


class Laboratory(Base):
    __tablename__ = 'laboratories'
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    code = Column(String, unique=True, index=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)


class PriceList(Base):
    __tablename__ = 'price_lists'
    id = Column(String, primary_key=True, default=new_id)
    laboratory_id = Column(String, ForeignKey('laboratories.id'), index=True, nullable=False)
    file_name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)


class LabTest(Base):
    __tablename__ = 'lab_tests'
    id = Column(String, primary_key=True, default=new_id)
    price_list_id = Column(String, ForeignKey('price_lists.id', ondelete="CASCADE"), index=True, nullable=False)
    name = Column(String, nullable=False)
    code = Column(String, nullable=True)
    price = Column(Float, nullable=True)
    category = Column(String, nullable=True)
    turnaround = Column(String, nullable=True)
    tube_type = Column(String, nullable=True)
    test_type = Column(String, nullable=True)


class TestMapping(Base):
    """A canonical test, mirrored from the registry."""
    __tablename__ = 'test_mappings'
    id = Column(String, primary_key=True, default=new_id)
    canonical_id = Column(Integer, unique=True, index=True, nullable=False)
    canonical_name = Column(String, unique=True, nullable=False)
    code = Column(String, index=True, nullable=False)
    category = Column(String, nullable=False, default="Individual")
    medical_category = Column(String, nullable=True)
    specimen = Column(String, nullable=True)
    aliases = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)


class TestMappingEntry(Base):
    __tablename__ = 'test_mapping_entries'
    id = Column(Integer, primary_key=True, index=True)
    test_mapping_id = Column(String, ForeignKey('test_mappings.id', ondelete="CASCADE"), index=True, nullable=False)
    laboratory_id = Column(String, ForeignKey('laboratories.id'), index=True, nullable=False)
    lab_test_id = Column(String, ForeignKey('lab_tests.id', ondelete="SET NULL"), nullable=True)
    local_test_name = Column(String, nullable=False)
    match_type = Column(String, nullable=False, default="EXACT")
    similarity = Column(Float, nullable=False, default=1.0)
    price = Column(Float, nullable=True)
    turnaround = Column(String, nullable=True)
    tube_type = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow)
    __table_args__ = (
        UniqueConstraint("laboratory_id", "test_mapping_id", name="uq_mapping_entry_lab_test"),
    )


class BundleDeal(Base):
    __tablename__ = 'bundle_deals'
    id = Column(String, primary_key=True, default=new_id)
    deal_name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)
    custom_rate = Column(Float, nullable=False)
    test_mapping_ids = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)
    popular = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
