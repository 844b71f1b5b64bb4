"""Journal ORM tables — durable copy of order state and status history."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bodadispatch.db.database import Base


class OrderRecord(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    rider_id: Mapped[str | None] = mapped_column(String(64), index=True)

    pickup_address: Mapped[str] = mapped_column(Text, nullable=False)
    pickup_lat: Mapped[float | None] = mapped_column(Numeric(10, 7))
    pickup_lng: Mapped[float | None] = mapped_column(Numeric(10, 7))
    dropoff_address: Mapped[str] = mapped_column(Text, nullable=False)
    dropoff_lat: Mapped[float | None] = mapped_column(Numeric(10, 7))
    dropoff_lng: Mapped[float | None] = mapped_column(Numeric(10, 7))

    description: Mapped[str | None] = mapped_column(Text)
    recipient_name: Mapped[str | None] = mapped_column(String(255))
    recipient_phone: Mapped[str | None] = mapped_column(String(20))
    shop_id: Mapped[str | None] = mapped_column(String(64), index=True)

    distance_km: Mapped[float | None] = mapped_column(Numeric(8, 2))
    duration_min: Mapped[float | None] = mapped_column(Numeric(8, 1))
    price: Mapped[float | None] = mapped_column(Numeric(10, 2))

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    entries = relationship(
        "OrderStatusRecord",
        back_populates="order",
        lazy="selectin",
        order_by="OrderStatusRecord.id",
    )


class OrderStatusRecord(Base):
    __tablename__ = "order_status_entries"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    rider_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    order = relationship("OrderRecord", back_populates="entries")
