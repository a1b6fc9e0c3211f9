"""
Services used by a call: agent configuration, appointment scheduling and the
persistence stores behind them.
"""
