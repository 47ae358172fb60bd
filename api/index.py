"""
Meterline - Serverless API

Runs the FastAPI app behind Mangum (AWS Lambda / Vercel).
"""

import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from meterline.api.server import app  # noqa: E402

# Serverless handler
handler = Mangum(app, lifespan="auto")
