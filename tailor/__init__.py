"""CV Tailor - application document generation service.

Turns a job posting into a tailored application pack:
- A CV with an exact page count (compile-validate-retry loop)
- A cover letter and a cold email (independent, best-effort)
- A session history with live, replayable progress logs
"""

__version__ = "0.1.0"
