"""
Knowledge base indexing pipeline.
"""
