#!/usr/bin/env python3
"""Configuration validation script."""

import sys
from pathlib import Path
from typing import List, Optional

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from autobook_app.config.loader import ConfigLoader
from autobook_app.config.validation import ConfigValidator, ValidationError


def validate_engine_config(config_dir: Optional[Path] = None) -> List[ValidationError]:
    """Validate the merged engine configuration."""
    loader = ConfigLoader.create(config_dir)
    config = loader.merge_config()
    return ConfigValidator.validate_config(config)


def main():
    """Main validation function."""
    config_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else None
    loader = ConfigLoader.create(config_dir)

    print(f"🔍 Validating booking engine configuration in {loader.config_dir}...")

    all_valid = True

    try:
        errors = validate_engine_config(config_dir)
        if errors:
            print(f"❌ Found {len(errors)} validation errors:")
            for error in errors:
                print(f"  • {error.field}: {error.message} (value: {error.value})")
            all_valid = False
        else:
            print("✅ Engine configuration is valid")
    except Exception as e:
        print(f"❌ Error loading configuration: {e}")
        all_valid = False

    # Overrides must be checked the same way
    print("\n📋 Testing explicit overrides...")
    test_overrides = {
        "retry": {"max_attempts": 5, "min_delay_ms": 500},
        "execution": {"deadline_seconds": 600},
    }

    try:
        config = loader.merge_config(test_overrides)
        errors = ConfigValidator.validate_config(config)
        if errors:
            print("❌ Override validation failed:")
            for error in errors:
                print(f"  • {error.field}: {error.message}")
            all_valid = False
        else:
            print("✅ Override validation passed")
    except Exception as e:
        print(f"❌ Error testing overrides: {e}")
        all_valid = False

    if all_valid:
        print("\n🎉 All configuration validation passed!")
        sys.exit(0)
    else:
        print("\n❌ Configuration validation failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
