"""childguard 入口点。

支持: python -m childguard
"""

from .app import main

if __name__ == "__main__":
    main()
