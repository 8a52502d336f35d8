"""CLI Agent Exec 入口点。

支持: python -m cli_agent_exec
"""

from .app import main

if __name__ == "__main__":
    main()
