"""Tests for the parking garage package"""
