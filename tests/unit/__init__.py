"""Unit tests: domain, application and infrastructure in isolation"""
