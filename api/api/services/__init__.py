"""Business services behind the billing API routers."""
