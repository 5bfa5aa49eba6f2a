"""
Core modules: reconstruction data model and bundle adjustment
"""
