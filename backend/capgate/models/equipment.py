from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Text, ForeignKey, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from capgate.db.base_class import Base


class Equipment(Base):
    __tablename__ = "equipment"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)
    type = Column(String, nullable=False)  # Refrigeration, Processing, HVAC, ...
    model = Column(String, nullable=True)
    manufacturer = Column(String, nullable=True)
    installed_date = Column(DateTime, nullable=True)
    nominal_power = Column(Float, nullable=True)  # kW
    nominal_efficiency = Column(Float, nullable=True)
    current_efficiency = Column(Float, nullable=True)
    maintenance_interval = Column(Integer, nullable=True)  # days
    last_maintenance = Column(DateTime, nullable=True)
    next_maintenance = Column(DateTime, nullable=True)
    status = Column(String, nullable=False, default="operational")  # operational, maintenance, warning, critical
    equipment_metadata = Column("metadata", JSON, nullable=True)

    efficiency_readings = relationship("EquipmentEfficiency", back_populates="equipment", cascade="all, delete-orphan")
    maintenance_entries = relationship("MaintenanceLog", back_populates="equipment", cascade="all, delete-orphan")


class EquipmentEfficiency(Base):
    __tablename__ = "equipment_efficiency"

    id = Column(Integer, primary_key=True, autoincrement=True)
    equipment_id = Column(Integer, ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False)
    timestamp = Column(DateTime, server_default=func.now(), nullable=False)
    power_usage = Column(Float, nullable=False)  # kW
    efficiency_rating = Column(Float, nullable=False)
    temperature_conditions = Column(Float, nullable=True)  # °C
    production_volume = Column(Float, nullable=True)
    anomaly_detected = Column(Boolean, nullable=False, default=False)
    anomaly_score = Column(Float, nullable=True)  # 0-100
    notes = Column(Text, nullable=True)

    equipment = relationship("Equipment", back_populates="efficiency_readings")


class MaintenanceLog(Base):
    __tablename__ = "maintenance_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    equipment_id = Column(Integer, ForeignKey("equipment.id", ondelete="CASCADE"), nullable=False)
    timestamp = Column(DateTime, server_default=func.now(), nullable=False)
    maintenance_type = Column(String, nullable=False)  # routine, repair, upgrade
    description = Column(Text, nullable=False)
    technician = Column(String, nullable=True)
    cost = Column(Float, nullable=True)
    parts_replaced = Column(Text, nullable=True)
    efficiency_before = Column(Float, nullable=True)
    efficiency_after = Column(Float, nullable=True)
    next_scheduled_date = Column(DateTime, nullable=True)

    equipment = relationship("Equipment", back_populates="maintenance_entries")
