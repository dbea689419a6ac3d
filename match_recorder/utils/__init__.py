# Utilities module
