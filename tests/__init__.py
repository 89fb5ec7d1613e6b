"""
counterflux test suite.

helpers.py holds the fake backend, command runner and workspace files the
workflow tests drive the machines with.
"""
