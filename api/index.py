from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger.api import app

# Served under /api by the serverless platform.
app.root_path = "/api"

handler = Mangum(app)
