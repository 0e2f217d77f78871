from sqlalchemy import Column, String, Integer, DateTime, JSON
from app.database import Base


class OrderRecord(Base):
    __tablename__ = "orders"

    seq = Column(Integer, primary_key=True, autoincrement=True)  # insertion order
    id = Column(String, unique=True, index=True, nullable=False)
    payment_reference_id = Column(String, unique=True, index=True, nullable=True)  # Stripe PaymentIntent ID
    status = Column(String, nullable=False)                # pending | completed | failed
    status_source = Column(String, nullable=False)         # intent | client | event
    amount = Column(Integer)                               # minor units
    currency = Column(String)
    customer_info = Column(JSON)
    order_details = Column(JSON)
    shipping = Column(JSON)
    created_at = Column(DateTime, nullable=False)          # naive UTC
    completed_at = Column(DateTime, nullable=True)


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    event_id = Column(String, primary_key=True)            # Stripe event ID (evt_...)
    event_type = Column(String)
    processed_at = Column(DateTime, nullable=False)
