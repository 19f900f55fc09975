# Identity sync services
