from dotenv import load_dotenv
import os

# Utils
from utils.log_utils import LogUtil

"""
Utility class for environment variables
"""
class EnvironmentUtils:
    def __init__(self, log_util: LogUtil):

        # Load environment variables
        load_dotenv()

        # Initialize logger
        self.log_util = log_util

        # Environment variables
        self.env_variables = {
            "APP_ENV": os.getenv("APP_ENV", "production"),
            "HOST": os.getenv("HOST", "0.0.0.0"),
            "PORT": int(os.getenv("PORT", "8018")),
            "ORG_ID": os.getenv("ORG_ID", "Funnels"),
            "LOKI_URL": os.getenv("LOKI_URL", ""),
            "STORE_BACKEND": os.getenv("STORE_BACKEND", "mongo"),
            "MONGO_USERNAME": os.getenv("MONGO_USERNAME", "funnelservice"),
            "MONGO_PASSWORD": os.getenv("MONGO_PASSWORD", ""),
            "MONGO_AUTH_SOURCE": os.getenv("MONGO_AUTH_SOURCE", "admin"),
            "MONGO_HOST": os.getenv("MONGO_HOST", "localhost"),
            "MONGO_PORT": int(os.getenv("MONGO_PORT", "27017")),
            "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "funnel_db"),
            "WHATSAPP_SERVICE_URL": os.getenv("WHATSAPP_SERVICE_URL", "http://localhost:8017/channel/send"),
            "EMAIL_SERVICE_URL": os.getenv("EMAIL_SERVICE_URL", "http://localhost:8019/channel/send"),
            "CONTACT_SERVICE_URL": os.getenv("CONTACT_SERVICE_URL", "http://localhost:8007/contacts"),
            "TRANSPORT_TIMEOUT_SECONDS": float(os.getenv("TRANSPORT_TIMEOUT_SECONDS", "30")),
            "DISPATCH_MAX_ATTEMPTS": int(os.getenv("DISPATCH_MAX_ATTEMPTS", "3")),
            "DISPATCH_BACKOFF_SECONDS": int(os.getenv("DISPATCH_BACKOFF_SECONDS", "60")),
            "SCHEDULER_INTERVAL_SECONDS": int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "20")),
            "SCHEDULER_BATCH_SIZE": int(os.getenv("SCHEDULER_BATCH_SIZE", "100")),
            "RUN_LOCK_TTL_SECONDS": int(os.getenv("RUN_LOCK_TTL_SECONDS", "300")),
            "FUNNEL_LOCK_TTL_SECONDS": int(os.getenv("FUNNEL_LOCK_TTL_SECONDS", "900")),
            "DEBUG": os.getenv("DEBUG", "false"),
        }

    def get_env_variable(self, variable_name: str) -> str | int | float:
        if variable_name not in self.env_variables:
            self.log_util.error(service_name="EnvironmentUtils", message=f"Environment variable {variable_name} not found")
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]
