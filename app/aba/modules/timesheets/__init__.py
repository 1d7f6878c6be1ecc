"""Timesheets: regular (RBT) and BCBA session logs, approval workflow, visibility scoping."""
