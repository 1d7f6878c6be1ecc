"""Reports: tabular summaries exported as JSON, CSV or Excel, plus dashboard stats."""
