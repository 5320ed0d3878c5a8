"""T-SQL generation: identifier quoting, predicates and the MERGE statement."""
