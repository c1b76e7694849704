"""
Local catalog product as mirrored from the marketplace.

Rows are upserted by the sync orchestrator keyed on the marketplace item id.
Upserts are last-writer-wins at the row level; there is no version column.
"""

from sqlalchemy import Column, Integer, String, Float, Text, DateTime, JSON

from app.core.utils import utcnow
from app.database import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)

    # Marketplace identity
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    seller_id = Column(String(64), nullable=True, index=True)
    family_id = Column(String(64), nullable=True)

    # Core product information
    name = Column(String(512), nullable=False)
    description = Column(Text, nullable=True)
    brand = Column(String(255), nullable=True)
    specifications = Column(JSON, nullable=True)

    # Pricing and stock
    original_price = Column(Float, nullable=True)
    discount_price = Column(Float, nullable=True)
    stock_quantity = Column(Integer, nullable=True)

    # Media
    image_url = Column(String(1024), nullable=True)
    images = Column(JSON, nullable=True)

    # Weight and dimensions
    weight = Column(Float, nullable=True)       # grams
    weight_kg = Column(Float, nullable=True)
    width_cm = Column(Float, nullable=True)
    height_cm = Column(Float, nullable=True)
    length_cm = Column(Float, nullable=True)
    dimensions = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<Product(id={self.id}, external_id='{self.external_id}', name='{self.name}')>"
