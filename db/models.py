# WORKFLOW: Database models for the persisted reference data, VAT table and match history.
# Used by: etl/loader.py (reference snapshot), services/vat_rates.py, services/match_history.py,
#          services/declaration_risk.py
# Models represent:
# 1. goods_nomenclature - HS code hierarchy and descriptions
# 2. tariff_rules - Base duty per goods code and origin, effective-dated
# 3. trade_measures - Anti-dumping/countervailing/quota/licence/SPS measures
# 4. trade_agreements - Preferential rates, one row per agreement country
# 5. country_group_members - Country groups (GSP, FTA partners, ...) used in geographical scopes
# 6. vat_rates - VAT rates by destination country, effective-dated
# 7. match_records - Learned classification matches (append-only counters)
# 8. declaration_value_records - Declared unit prices per code and origin with the customs outcome
#
# Data flow: Reference feed -> tables -> etl/loader.py -> immutable snapshot -> engine

from sqlalchemy import Boolean, Column, Date, DateTime, Index, Integer, JSON, Numeric, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class GoodsNomenclature(Base):
    __tablename__ = "goods_nomenclature"

    goods_code = Column(String(10), primary_key=True, index=True)
    description = Column(Text, nullable=False)
    level = Column(Integer, nullable=False)
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)
    is_leaf = Column(Boolean, default=False)

    __table_args__ = (
        Index('idx_goods_code_level', 'goods_code', 'level'),
        Index('idx_is_leaf', 'is_leaf'),
    )


class TariffRules(Base):
    __tablename__ = "tariff_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    goods_code = Column(String(10), nullable=False)
    origin_group = Column(String(50), nullable=False)  # ISO country or ERGA OMNES
    duty_components = Column(JSON, nullable=False)  # Parsed duty components, see etl/duty_parser.py
    legal_base_id = Column(String(50), nullable=False, default="")
    data_source = Column(String(50), nullable=False, default="")
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_rules_goods_origin', 'goods_code', 'origin_group'),
        Index('idx_rules_validity', 'valid_from', 'valid_to'),
    )


class TradeMeasures(Base):
    __tablename__ = "trade_measures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    measure_id = Column(String(50), nullable=False, unique=True)
    measure_type = Column(String(20), nullable=False)
    goods_code_prefix = Column(String(10), nullable=False)
    geographical_area = Column(JSON, nullable=False)  # Array of country/group codes
    excluded_areas = Column(JSON, nullable=True)
    duty_expression = Column(String(100), nullable=True)
    conditions = Column(JSON, nullable=True)
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)

    __table_args__ = (
        Index('idx_measures_prefix_type', 'goods_code_prefix', 'measure_type'),
        Index('idx_measures_validity', 'valid_from', 'valid_to'),
    )


class TradeAgreements(Base):
    __tablename__ = "trade_agreements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    agreement_code = Column(String(50), nullable=False)
    country_code = Column(String(10), nullable=False)
    preferential_rate = Column(Numeric(10, 4), nullable=False)
    goods_code_prefix = Column(String(10), nullable=True)
    document_code = Column(String(50), nullable=True)  # Proof of origin (EUR.1, REX, ...)
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index('idx_agreements_code', 'agreement_code'),
        Index('idx_agreements_country', 'country_code'),
    )


class CountryGroupMembers(Base):
    __tablename__ = "country_group_members"

    group_code = Column(String(50), primary_key=True)
    country_code = Column(String(10), primary_key=True)


class VatRates(Base):
    __tablename__ = "vat_rates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    country_code = Column(String(3), nullable=False)
    standard_rate = Column(Numeric(6, 3), nullable=False)
    reduced_rate_1 = Column(Numeric(6, 3), nullable=True)
    valid_from = Column(Date, nullable=False)
    valid_to = Column(Date, nullable=True)

    __table_args__ = (
        Index('idx_vat_country_validity', 'country_code', 'valid_from', 'valid_to'),
    )


class MatchRecords(Base):
    __tablename__ = "match_records"

    product_key = Column(String(512), primary_key=True)
    matched_hs_code = Column(String(10), nullable=False)
    match_count = Column(Integer, nullable=False, default=1)
    last_matched_at = Column(DateTime, nullable=False)


class DeclarationValueRecords(Base):
    __tablename__ = "declaration_value_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    hs_code = Column(String(10), nullable=False)
    origin_country_code = Column(String(10), nullable=False)
    unit_price = Column(Numeric(14, 4), nullable=False)
    result = Column(String(16), nullable=False, default="pending")
    declared_on = Column(Date, nullable=False)
    batch_id = Column(String(64), nullable=True)
    item_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_declaration_code_origin', 'hs_code', 'origin_country_code'),
        Index('idx_declaration_batch', 'batch_id', 'result'),
    )
