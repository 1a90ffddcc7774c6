import argparse

from db.dataset_store import DatasetStoreManager
from utils.exceptions import StoreUnavailableError


def reset_dataset_store(link_id, data_dir=None):
    """
    Deletes the store file of one dataset (and its journal files). The store is
    recreated empty the next time the dataset is opened.
    WARNING: This will delete all ingested data of the dataset!
    """
    manager = DatasetStoreManager(data_dir)
    path = manager.get_store_path(link_id)

    if not manager.store_file_exists(link_id):
        print(f"No store file found for {link_id} at {path}.")
        return False

    print(f"Deleting store for {link_id} at {path}...")
    try:
        manager.destructive_rebuild(link_id)
    except StoreUnavailableError as e:
        print(f"Error deleting store: {e}")
        return False

    print("Dataset store removed successfully.")
    return True


def confirm_reset(link_id):
    """
    Prompt the user to confirm if they want to proceed with resetting the dataset store.
    Returns:
        bool: True if the user confirms, False otherwise.
    """
    while True:
        user_input = input(
            f"WARNING: This will remove all data stored for dataset {link_id}.\n"
            "Are you sure you want to proceed? (yes/no): "
        ).strip().lower()
        if user_input in ['yes', 'no']:
            return user_input == 'yes'
        else:
            print("Invalid input. Please type 'yes' or 'no'.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Reset a dataset store by deleting its SQLite file and journal files."
    )
    parser.add_argument("--link-id", required=True, help="Identifier of the dataset to reset.")
    parser.add_argument("--data-dir", default=None, help="Base data directory (defaults to CURTAIN_DATA_DIR).")
    parser.add_argument(
        "--confirm",
        action="store_true",
        help="Skip the confirmation prompt and reset the store immediately."
    )
    args = parser.parse_args()

    if args.confirm or confirm_reset(args.link_id):
        reset_dataset_store(args.link_id, args.data_dir)
    else:
        print("Operation aborted. The dataset store was not modified.")
