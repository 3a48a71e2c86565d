# tradecore/__init__.py
