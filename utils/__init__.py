# Utility modules package
