"""
Core modules for Story Context.

This package contains history windowing, summary compression, context
assembly, cache lifecycle management, stream decoding and cost accounting.
"""
