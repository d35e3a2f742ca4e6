"""
flymark: Automated exam marking for imark

Runs the commands of a declarative marking scheme against every student
submission, scores and aggregates the results, and submits the final marks
to an imark CGI endpoint.
"""

__version__ = "0.1.0"
