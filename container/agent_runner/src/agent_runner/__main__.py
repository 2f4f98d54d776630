import asyncio
import sys

from agent_runner.main import main

sys.exit(asyncio.run(main()))
