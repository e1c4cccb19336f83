"""
PlanTakeoff — Construction plan ingestion and multi-model quantity takeoff

Turns plan PDFs into searchable, embedded text chunks, and turns plan page
images into one reconciled takeoff list by merging the answers of three
independent vision models.
"""

__version__ = "1.0.0"
__author__ = "PlanTakeoff"
