"""
Core modules for Guarded Chat.

This package contains the chat pipeline: token counting, prompt
budgeting, retrieval augmentation, completion streaming, and usage
accounting.
"""
