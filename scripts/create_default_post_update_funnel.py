"""
Script to create the default "New Post Distribution" funnel.

This script:
- Looks for a funnel bound to the new_post_published trigger
- Creates an active single-email funnel when there is none
- Safe to run multiple times (idempotent)
"""

import asyncio
import sys
import os

# Add src directory to path to import modules
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
src_dir = os.path.join(project_root, 'src')
sys.path.insert(0, src_dir)
sys.path.insert(0, project_root)

from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils
from database.funnel_db import FunnelDB
from services.funnel_validation_service import FunnelValidationService
from services.funnel_service import FunnelService


async def create_default_post_update_funnel():
    """
    Create the default post update funnel if it does not exist yet.
    """
    # Initialize utilities
    log_util = LogUtil()
    environment_utils = EnvironmentUtils(log_util=log_util)

    # Initialize database
    funnel_db = FunnelDB(log_util=log_util, environment_utils=environment_utils)
    funnel_service = FunnelService(
        log_util=log_util,
        funnel_store=funnel_db,
        validation_service=FunnelValidationService(log_util=log_util)
    )

    try:
        log_util.info(
            service_name="CreateDefaultPostUpdateFunnel",
            message="Looking for the default post update funnel..."
        )

        funnel = await funnel_service.create_default_post_update_funnel(editor_id="create_default_post_update_funnel")

        print("\n" + "="*60)
        print("DEFAULT FUNNEL")
        print("="*60)
        print(f"  Funnel ID: {funnel.id}")
        print(f"  Name: {funnel.name}")
        print(f"  Trigger: {funnel.trigger.value}")
        print(f"  Active: {funnel.isActive}")
        print(f"  Nodes: {len(funnel.nodes)}")
        print("="*60)

    except Exception as e:
        log_util.error(
            service_name="CreateDefaultPostUpdateFunnel",
            message=f"Fatal error creating default funnel: {str(e)}"
        )
        print(f"\n❌ Fatal error: {str(e)}")
        raise
    finally:
        # Close database connection
        await funnel_db.close()
        log_util.info(
            service_name="CreateDefaultPostUpdateFunnel",
            message="Database connection closed"
        )


if __name__ == "__main__":
    print("="*60)
    print("Create Default Post Update Funnel")
    print("="*60)

    try:
        asyncio.run(create_default_post_update_funnel())
        print("\n[SUCCESS] Script completed successfully!")
    except KeyboardInterrupt:
        print("\n[WARNING] Script interrupted by user")
        sys.exit(1)
    except Exception as e:
        print(f"\n[ERROR] Script failed with error: {str(e)}")
        sys.exit(1)
