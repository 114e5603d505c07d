"""Configuration package for logvault.

All constants live in `config.settings`; import them from there
(e.g. `from config.settings import ORIGIN`).
"""
