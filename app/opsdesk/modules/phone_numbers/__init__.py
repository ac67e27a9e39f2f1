"""
Phone-number directory with carrier lookup (lookup/) and spreadsheet import.
"""
