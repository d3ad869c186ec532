from sqlalchemy import Column, Integer, String, Float, DateTime, Index
from sqlalchemy.sql import func
from capgate.db.base_class import Base


class PowerData(Base):
    __tablename__ = "power_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, server_default=func.now(), nullable=False)
    main_grid_power = Column(Float, nullable=False)  # kW
    solar_output = Column(Float, nullable=False)  # kW
    refrigeration_load = Column(Float, nullable=False)  # kW
    big_cold_room = Column(Float, nullable=False)  # kW
    big_freezer = Column(Float, nullable=False)  # kW
    smoker = Column(Float, nullable=False)  # kW
    total_load = Column(Float, nullable=False)  # kW
    unaccounted_load = Column(Float, nullable=False)  # kW


class EnvironmentalData(Base):
    __tablename__ = "environmental_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, server_default=func.now(), nullable=False)
    weather = Column(String, nullable=False)  # Sunny, Partly Cloudy, Rain, ...
    air_temp = Column(Float, nullable=False)  # °C
    ghi = Column(Float, nullable=False)  # Global Horizontal Irradiance
    dni = Column(Float, nullable=False)  # Direct Normal Irradiance
    dhi = Column(Float, nullable=True)  # Diffuse Horizontal Irradiance
    humidity = Column(Float, nullable=True)  # %
    wind_speed = Column(Float, nullable=True)  # km/h
    wind_direction = Column(Float, nullable=True)  # degrees from North
    cloud_opacity = Column(Float, nullable=True)  # 0-100
    data_source = Column(String, nullable=True)
    forecast_horizon = Column(Integer, nullable=True)  # hours, 0 for current


Index('idx_power_data_timestamp', PowerData.timestamp)
Index('idx_environmental_data_timestamp', EnvironmentalData.timestamp)
