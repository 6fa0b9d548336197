"""Pydantic schemas for the production order aggregate and its actions"""
