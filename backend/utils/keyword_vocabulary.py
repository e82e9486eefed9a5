"""Keyword vocabularies used to group commits into features and decisions.

Vocabularies are English-only and match case-insensitively at word
starts, so "auth" matches "authentication" but "ui" never matches "rebuild".

- FEATURE_KEYWORDS: business feature areas ("auth", "payment", ...)
- ARCHITECTURAL_KEYWORDS: signals of an architectural decision
"""

import re

FEATURE_KEYWORDS = [
    "auth",
    "login",
    "payment",
    "api",
    "database",
    "security",
    "ui",
    "performance",
    "search",
    "notification",
    "test",
    "deploy",
]

FEATURE_NAMES = {
    "auth": "User Authentication",
    "login": "Login Flow",
    "payment": "Payment Integration",
    "api": "API Layer",
    "database": "Database Layer",
    "security": "Security Hardening",
    "ui": "User Interface",
    "performance": "Performance Optimization",
    "search": "Search",
    "notification": "Notifications",
    "test": "Test Coverage",
    "deploy": "Deployment Pipeline",
}

BUSINESS_VALUE = {
    "auth": "Security and user management",
    "login": "User access and onboarding",
    "payment": "Revenue generation",
    "api": "Integration and extensibility",
    "database": "Data integrity and scalability",
    "security": "Risk reduction and compliance",
    "ui": "User experience",
    "performance": "Speed and operating cost",
    "search": "Content discovery",
    "notification": "User engagement",
    "test": "Quality and release confidence",
    "deploy": "Delivery speed and reliability",
}

DEFAULT_BUSINESS_VALUE = "General product improvement"

ARCHITECTURAL_KEYWORDS = [
    "refactor",
    "architecture",
    "pattern",
    "framework",
    "migrate",
    "restructure",
    "redesign",
    "upgrade",
    "library",
    "design",
]


def mentions_keyword(text: str, keyword: str) -> bool:
    """True if keyword starts a word in text (case-insensitive)."""
    return re.search(rf"\b{re.escape(keyword)}", text, re.IGNORECASE) is not None


def matching_keywords(text: str, vocabulary: list[str]) -> list[str]:
    """
    Return the vocabulary entries that occur in text.

    Args:
        text: Free text (commit subject and body).
        vocabulary: Keywords to look for, in priority order.

    Returns:
        list[str]: Matching keywords in vocabulary order.
    """
    return [keyword for keyword in vocabulary if mentions_keyword(text, keyword)]


def business_value_for(keyword: str) -> str:
    """Look up the business-value label of a feature keyword."""
    return BUSINESS_VALUE.get(keyword, DEFAULT_BUSINESS_VALUE)


def feature_name_for(keyword: str) -> str:
    """Look up the display name of a feature keyword."""
    return FEATURE_NAMES.get(keyword, keyword.title())
