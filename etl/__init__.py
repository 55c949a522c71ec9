# WORKFLOW: ETL (Extract, Transform, Load) package for reference-data loading.
# Used by: Reference-data sync, API startup
# Modules include:
# 1. duty_parser.py - Parse duty expressions (ad valorem, specific, compound)
# 2. validators.py - Validate frames and snapshot integrity
# 3. loader.py - Read canonical tables with pandas and convert them to domain records
#
# ETL flow: Canonical DB -> DataFrame -> Validate -> Domain records -> Reference snapshot

"""
ETL package for loading tariff reference data into the engine.
"""
