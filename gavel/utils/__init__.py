"""Shared utilities: logging and request validation"""
