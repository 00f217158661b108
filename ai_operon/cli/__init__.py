"""
CLI module - command line entry point
"""
