"""
Jira Ticket Triage Assistant.

This package classifies Jira issues by category and priority using an
LLM with keyword-heuristic fallback, recommends assignees by workload,
finds similar resolved tickets and writes the results back to Jira.
"""

__version__ = "1.0.0"
__author__ = "Automation Engineer"
