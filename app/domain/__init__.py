"""
Domain layer package.

Contains pure business logic: entities, value objects, domain services,
and port interfaces. Only small utility libraries (date parsing, retry
policies) are imported here.
No framework imports, no IO, no side effects.
"""
