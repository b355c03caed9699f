"""
Command-line interface for the encrypted vault.

Provides text-based menu for:
- User registration, login and password change
- Folders and file upload / download, encrypted client side
- Rename, move and delete
- Sharing with users and through (optionally password protected) links
- Opening a share link anonymously
"""

from getpass import getpass
from pathlib import Path
from typing import List, Optional, Tuple

import settings
from accounts.hashing import SimpleHasher
from accounts.manager import AccountManager
from accounts.models import Principal
from accounts.storage import JSONStorage
from crypto.envelope import LinkCredential
from crypto.keys import KeySession
from crypto.primitives import b64d
from errors import VaultError, public_error
from sharing.grants import (
    GrantRef,
    grant_link,
    grant_to_user,
    list_grants,
    purge_expired,
    revoke,
    shared_with_me,
)
from storage.blobs import BlobStore
from storage.file_manager import (
    DecryptedNode,
    create_node,
    delete_node,
    list_children,
    list_roots,
    open_key,
    read_node,
    rename_node,
)
from storage.models import UserGrant
from storage.store import JSONVaultStore
from storage.tree import move_node


class Vault:
    """The stores one CLI process works against."""

    def __init__(self, root: Optional[Path] = None):
        root = Path(root) if root else settings.VAULT_ROOT
        root.mkdir(parents=True, exist_ok=True)
        self.accounts = AccountManager(JSONStorage(root / settings.USERS_FILE), SimpleHasher())
        self.store = JSONVaultStore(root / "vault.json")
        self.blobs = BlobStore(root / "blobs")


def print_menu(logged_in: bool = False, username: str = "") -> None:
    print("\n" + "=" * 50)
    if logged_in:
        print(f"  🔐 Vault - Logged in as: {username}")
    else:
        print("  🔐 Vault")
    print("=" * 50)

    if not logged_in:
        print("  1) Sign up")
        print("  2) Log in")
        print("  3) Open a share link")
        print("  0) Quit")
    else:
        print("  1) Upload file")
        print("  2) New folder")
        print("  3) Browse / download")
        print("  4) Files shared with me")
        print("  5) Rename")
        print("  6) Move")
        print("  7) Delete")
        print("  8) Share with user")
        print("  9) Create share link")
        print(" 10) Manage grants")
        print(" 11) Change password")
        print(" 12) Log out")
        print("  0) Quit")
    print("=" * 50)


def _fail(action: str, e: Exception) -> None:
    if isinstance(e, VaultError):
        e = public_error(e)
    print(f"❌ {action} failed: {e}")


def _describe(vault: Vault, session: KeySession, node_id: str,
              link: Optional[LinkCredential] = None) -> DecryptedNode:
    node_key = open_key(vault.store, session, node_id, link=link)
    return read_node(vault.store, vault.blobs, session, node_id, node_key,
                     link=link, with_content=False)


def _walk(vault: Vault, session: KeySession, link: Optional[LinkCredential] = None,
          start: Optional[List[str]] = None) -> List[DecryptedNode]:
    """Depth-first listing of everything the session can see from its entry points."""
    if start is None:
        start = [n.node_id for n in list_roots(vault.store, session)]
        start += [g.node_id for g in shared_with_me(vault.store, session)]
    found: List[DecryptedNode] = []
    seen = set()
    stack = list(reversed(start))
    while stack:
        node_id = stack.pop()
        if node_id in seen:
            continue
        seen.add(node_id)
        entry = _describe(vault, session, node_id, link)
        found.append(entry)
        if entry.is_directory:
            children = list_children(vault.store, session, node_id, link=link)
            stack.extend(reversed([c.node_id for c in children]))
    return found


def _list_all(vault: Vault, session: KeySession) -> Optional[List[DecryptedNode]]:
    """_walk for the menu handlers: reports a failed listing and returns None."""
    try:
        return _walk(vault, session)
    except VaultError as e:
        _fail("Listing", e)
        return None


def _print_nodes(nodes: List[DecryptedNode]) -> None:
    for i, n in enumerate(nodes, 1):
        icon = "📁" if n.is_directory else "📄"
        size = "" if n.is_directory else f" ({n.size:,} bytes)"
        print(f"   {i}. {icon} {n.name}{size}  [{n.node_id[:8]}]")


def _pick(nodes: List[DecryptedNode], prompt: str, allow_none: bool = False) -> Tuple[bool, Optional[DecryptedNode]]:
    """Returns (ok, node). With allow_none an empty answer means 'no node'."""
    answer = input(prompt).strip()
    if allow_none and not answer:
        return True, None
    try:
        choice = int(answer) - 1
    except ValueError:
        print("❌ Invalid input")
        return False, None
    if choice < 0 or choice >= len(nodes):
        print("❌ Invalid selection")
        return False, None
    return True, nodes[choice]


def _pick_folder(vault: Vault, session: KeySession, prompt: str,
                 link: Optional[LinkCredential] = None) -> Tuple[bool, Optional[DecryptedNode]]:
    try:
        folders = [n for n in _walk(vault, session, link) if n.is_directory]
    except VaultError as e:
        _fail("Listing", e)
        return False, None
    if folders:
        print("\nFolders:")
        _print_nodes(folders)
    return _pick(folders, prompt, allow_none=True)


# ============================================================================
# Logged out
# ============================================================================

def handle_signup(vault: Vault) -> None:
    print("\n📝 Create New Account")
    username = input("Username: ").strip()
    if not username:
        print("❌ Username cannot be empty")
        return

    password = getpass("Password: ")
    if len(password) < 6:
        print("❌ Password must be at least 6 characters")
        return

    confirm = getpass("Confirm password: ")
    if password != confirm:
        print("❌ Passwords don't match")
        return

    try:
        user = vault.accounts.register(username, password)
        print(f"✅ Account created: {user.username}")
        print(f"   User ID: {user.user_id}")
        print("   RSA key pair generated and wrapped under your password")
    except ValueError as e:
        print(f"❌ Error: {e}")


def handle_login(vault: Vault) -> Tuple[Optional[Principal], Optional[KeySession]]:
    print("\n🔑 Login")
    username = input("Username: ").strip()
    password = getpass("Password: ")

    user = vault.accounts.authenticate(username, password)
    if not user:
        print("❌ Invalid credentials")
        return None, None
    try:
        session = vault.accounts.unlock(user, password)
    except VaultError:
        print("❌ Could not unlock your private key")
        return None, None
    print(f"✅ Welcome back, {user.username}!")
    return user, session


def handle_open_link(vault: Vault) -> None:
    print("\n🔗 Open Share Link")
    link_id = input("Link id: ").strip()
    secret = input("Link secret (the part after #): ").strip()
    if not link_id or not secret:
        print("❌ Link id and secret are required")
        return
    password = getpass("Link password (Enter if none): ") or None

    try:
        credential = LinkCredential(link_id=link_id, secret=b64d(secret), password=password)
    except ValueError:
        print("❌ Malformed link secret")
        return

    grant = vault.store.snapshot().link_grant(link_id)
    if grant is None:
        print("❌ File not found")
        return
    with KeySession.anonymous() as session:
        try:
            nodes = _walk(vault, session, credential, start=[grant.node_id])
            _print_nodes(nodes)
            files = [n for n in nodes if not n.is_directory]
            if not files:
                return
            ok, selected = _pick(files, "\nDownload file number (Enter to skip): ", allow_none=True)
            if ok and selected is not None:
                _download(vault, session, selected, credential)
        except VaultError as e:
            _fail("Open link", e)


# ============================================================================
# Logged in
# ============================================================================

def handle_upload(vault: Vault, session: KeySession) -> None:
    print("\n📤 Upload File")
    filepath = input("File path: ").strip()
    if not filepath:
        print("❌ File path cannot be empty")
        return
    path = Path(filepath).expanduser()
    if not path.is_file():
        print(f"❌ File not found: {filepath}")
        return

    ok, folder = _pick_folder(vault, session, "Upload into folder number (Enter for top level): ")
    if not ok:
        return
    try:
        parent_key = open_key(vault.store, session, folder.node_id) if folder else None
        node, _ = create_node(
            vault.store, vault.blobs, session, path.name,
            parent_id=folder.node_id if folder else None,
            parent_key=parent_key,
            content=path.read_bytes(),
            accounts=vault.accounts,
        )
        print("\n✅ File uploaded successfully!")
        print(f"   📄 Filename: {path.name}")
        print(f"   🔑 File ID: {node.node_id}")
        print(f"   📊 Size: {node.size:,} bytes (encrypted)")
    except (VaultError, OSError) as e:
        _fail("Upload", e)


def handle_new_folder(vault: Vault, session: KeySession) -> None:
    print("\n📁 New Folder")
    name = input("Folder name: ").strip()
    if not name:
        print("❌ Name cannot be empty")
        return
    ok, folder = _pick_folder(vault, session, "Create inside folder number (Enter for top level): ")
    if not ok:
        return
    try:
        parent_key = open_key(vault.store, session, folder.node_id) if folder else None
        node, _ = create_node(
            vault.store, vault.blobs, session, name,
            parent_id=folder.node_id if folder else None,
            parent_key=parent_key,
            is_directory=True,
            accounts=vault.accounts,
        )
        print(f"✅ Folder created: {name} [{node.node_id[:8]}]")
    except VaultError as e:
        _fail("Create folder", e)


def _download(vault: Vault, session: KeySession, selected: DecryptedNode,
              link: Optional[LinkCredential] = None) -> None:
    node_key = open_key(vault.store, session, selected.node_id, link=link)
    full = read_node(vault.store, vault.blobs, session, selected.node_id, node_key, link=link)
    target = Path("downloads") / full.name
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(full.content or b"")
    print("\n✅ File downloaded successfully!")
    print(f"   📁 Saved to: {target}")


def handle_browse(vault: Vault, session: KeySession) -> None:
    print("\n📁 My Vault")
    nodes = _list_all(vault, session)
    if nodes is None:
        return
    if not nodes:
        print("   Nothing here yet")
        return
    _print_nodes(nodes)
    files = [n for n in nodes if not n.is_directory]
    ok, selected = _pick(nodes, "\nDownload number (Enter to go back): ", allow_none=True)
    if not ok or selected is None:
        return
    if selected not in files:
        print("❌ Folders cannot be downloaded")
        return
    try:
        _download(vault, session, selected)
    except (VaultError, OSError) as e:
        _fail("Download", e)


def handle_list_shared(vault: Vault, session: KeySession) -> None:
    print("\n📥 Shared With Me")
    grants = shared_with_me(vault.store, session)
    if not grants:
        print("   Nothing shared with you")
        return
    for g in grants:
        try:
            entry = _describe(vault, session, g.node_id)
        except VaultError as e:
            _fail("Open share", e)
            continue
        owner = vault.accounts.get_user(entry.owner_id).username
        mode = "edit" if g.edit else "view"
        expiry = f", expires {g.expires_at}" if g.expires_at else ""
        print(f"   • {entry.name} (from {owner}, {mode}{expiry})")


def handle_rename(vault: Vault, session: KeySession) -> None:
    print("\n✏️ Rename")
    nodes = _list_all(vault, session)
    if nodes is None:
        return
    if not nodes:
        print("   Nothing to rename")
        return
    _print_nodes(nodes)
    ok, selected = _pick(nodes, "\nSelect number: ")
    if not ok:
        return
    new_name = input("New name: ").strip()
    try:
        node_key = open_key(vault.store, session, selected.node_id)
        rename_node(vault.store, session, selected.node_id, node_key, new_name)
        print(f"✅ Renamed to {new_name}")
    except (VaultError, ValueError) as e:
        _fail("Rename", e)


def handle_move(vault: Vault, session: KeySession) -> None:
    print("\n🚚 Move")
    nodes = _list_all(vault, session)
    if nodes is None:
        return
    if not nodes:
        print("   Nothing to move")
        return
    _print_nodes(nodes)
    ok, selected = _pick(nodes, "\nSelect number to move: ")
    if not ok:
        return
    ok, folder = _pick_folder(vault, session, "Move into folder number (Enter for top level): ")
    if not ok:
        return
    try:
        node_key = open_key(vault.store, session, selected.node_id)
        parent_key = open_key(vault.store, session, folder.node_id) if folder else None
        move_node(vault.store, session, selected.node_id,
                  folder.node_id if folder else None, node_key, parent_key)
        print(f"✅ Moved {selected.name}")
    except (VaultError, ValueError) as e:
        _fail("Move", e)


def handle_delete(vault: Vault, session: KeySession) -> None:
    print("\n🗑️ Delete")
    nodes = _list_all(vault, session)
    if nodes is None:
        return
    if not nodes:
        print("   Nothing to delete")
        return
    _print_nodes(nodes)
    ok, selected = _pick(nodes, "\nSelect number to delete: ")
    if not ok:
        return

    what = "folder and everything in it" if selected.is_directory else "file"
    confirm = input(f"Delete {what} '{selected.name}'? (yes/no): ").strip().lower()
    if confirm != "yes":
        print("   Cancelled")
        return
    try:
        deleted = delete_node(vault.store, vault.blobs, session, selected.node_id)
        print(f"✅ Deleted {len(deleted)} item(s)")
    except VaultError as e:
        _fail("Delete", e)


def handle_share(vault: Vault, user: Principal, session: KeySession) -> None:
    print("\n🔗 Share With User")
    nodes = _list_all(vault, session)
    if nodes is None:
        return
    if not nodes:
        print("   Nothing to share")
        return
    _print_nodes(nodes)
    ok, selected = _pick(nodes, "\nSelect number to share: ")
    if not ok:
        return

    other_users = vault.accounts.get_other_users(user.username)
    if not other_users:
        print("   No other users registered")
        return
    print(f"\nAvailable users: {', '.join(u.username for u in other_users)}")
    target = vault.accounts.get_user_by_username(input("Share with: ").strip())
    if not target:
        print("❌ User not found")
        return
    edit = input("Allow editing? (y/N): ").strip().lower() == "y"

    try:
        node_key = open_key(vault.store, session, selected.node_id)
        grant_to_user(vault.store, vault.accounts, session, selected.node_id,
                      node_key, target.user_id, edit)
        print(f"✅ Shared {selected.name} with {target.username}")
    except (VaultError, ValueError) as e:
        _fail("Share", e)


def handle_link(vault: Vault, session: KeySession) -> None:
    print("\n🔗 Create Share Link")
    nodes = _list_all(vault, session)
    if nodes is None:
        return
    if not nodes:
        print("   Nothing to share")
        return
    _print_nodes(nodes)
    ok, selected = _pick(nodes, "\nSelect number to share: ")
    if not ok:
        return
    edit = input("Allow editing? (y/N): ").strip().lower() == "y"
    password = getpass("Link password (Enter for none): ") or None
    try:
        expires_in = int(input("Expires in seconds (0 = never): ").strip() or "0")
    except ValueError:
        print("❌ Invalid input")
        return

    try:
        node_key = open_key(vault.store, session, selected.node_id)
        share = grant_link(vault.store, session, selected.node_id, node_key, edit,
                           password=password, expires_in=expires_in)
        print("✅ Link created")
        print(f"   {share.url('https://vault.local')}")
        if share.expires_at:
            print(f"   Expires: {share.expires_at.isoformat()}")
    except VaultError as e:
        _fail("Create link", e)


def handle_grants(vault: Vault, session: KeySession) -> None:
    print("\n🛂 Manage Grants")
    try:
        removed = purge_expired(vault.store)
    except VaultError as e:
        _fail("Purge", e)
        return
    if removed:
        print(f"   Removed {removed} expired grant(s)")
    nodes = _list_all(vault, session)
    if nodes is None:
        return
    if not nodes:
        print("   Nothing shared")
        return
    _print_nodes(nodes)
    ok, selected = _pick(nodes, "\nSelect number: ")
    if not ok:
        return
    try:
        grants = list_grants(vault.store, session, selected.node_id)
    except VaultError as e:
        _fail("List grants", e)
        return
    if not grants:
        print("   No grants on this item")
        return

    refs = []
    for i, g in enumerate(grants, 1):
        mode = "edit" if g.edit else "view"
        if isinstance(g, UserGrant):
            who = vault.accounts.get_user(g.user_id).username
            refs.append(GrantRef.user(g.node_id, g.user_id))
            print(f"   {i}. user {who} ({mode})")
        else:
            lock = ", password" if g.password_protected else ""
            refs.append(GrantRef.link(g.link_id))
            print(f"   {i}. link {g.link_id[:8]} ({mode}{lock})")

    answer = input("\nRevoke number (Enter to keep all): ").strip()
    if not answer:
        return
    try:
        ref = refs[int(answer) - 1]
    except (ValueError, IndexError):
        print("❌ Invalid selection")
        return
    try:
        revoke(vault.store, session, ref)
        print("✅ Grant revoked")
    except VaultError as e:
        _fail("Revoke", e)


def handle_change_password(vault: Vault, user: Principal) -> Optional[Principal]:
    print("\n🔑 Change Password")
    old = getpass("Current password: ")
    new = getpass("New password: ")
    if len(new) < 6:
        print("❌ Password must be at least 6 characters")
        return None
    if new != getpass("Confirm new password: "):
        print("❌ Passwords don't match")
        return None
    try:
        updated = vault.accounts.change_password(user, old, new)
        print("✅ Password changed")
        return updated
    except VaultError as e:
        _fail("Change password", e)
        return None


def main(vault: Optional[Vault] = None):
    vault = vault or Vault()
    current_user: Optional[Principal] = None
    session: Optional[KeySession] = None

    print("\n🔐 Encrypted Vault")
    print("   Zero-knowledge • Shareable\n")

    while True:
        print_menu(logged_in=current_user is not None,
                   username=current_user.username if current_user else "")
        choice = input("> ").strip()

        if current_user is None:
            if choice == "1":
                handle_signup(vault)
            elif choice == "2":
                current_user, session = handle_login(vault)
            elif choice == "3":
                handle_open_link(vault)
            elif choice == "0":
                print("\nGoodbye! 👋")
                break
            else:
                print("❌ Invalid choice")
        else:
            if choice == "1":
                handle_upload(vault, session)
            elif choice == "2":
                handle_new_folder(vault, session)
            elif choice == "3":
                handle_browse(vault, session)
            elif choice == "4":
                handle_list_shared(vault, session)
            elif choice == "5":
                handle_rename(vault, session)
            elif choice == "6":
                handle_move(vault, session)
            elif choice == "7":
                handle_delete(vault, session)
            elif choice == "8":
                handle_share(vault, current_user, session)
            elif choice == "9":
                handle_link(vault, session)
            elif choice == "10":
                handle_grants(vault, session)
            elif choice == "11":
                current_user = handle_change_password(vault, current_user) or current_user
            elif choice == "12":
                print(f"\n👋 Logged out from {current_user.username}")
                session.close()
                current_user = None
                session = None
            elif choice == "0":
                session.close()
                print("\nGoodbye! 👋")
                break
            else:
                print("❌ Invalid choice")
