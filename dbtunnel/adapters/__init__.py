"""
Adapters: configuration loading and CLI
"""
