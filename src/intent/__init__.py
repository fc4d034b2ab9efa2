"""Intent parsing and validation.

The intent layer converts free-text trading requests into a strict `ParsedIntent`, which the policy
engine, router and execution coordinator consume.
"""
