"""Clearhouse core: models, storage, ledger gateway and settlement engines"""
