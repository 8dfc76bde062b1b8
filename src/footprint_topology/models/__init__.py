"""Graph models for footprint comparison and merging"""
