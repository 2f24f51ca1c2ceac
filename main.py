import os
import threading
import logging

log = logging.getLogger('checkin')

def main():
    """Entry point for local development (not used by gunicorn)."""
    from checkin_unified import CheckinLedger

    ledger = CheckinLedger()

    def do_sync():
        try:
            if not ledger.config.woocommerce_url:
                log.error("WOOCOMMERCE_URL not set - skipping sync")
                return
            log.info("Starting background discovery...")
            discovered = ledger.discover()
            if not discovered.get('success'):
                log.warning(f"Discovery failed: {discovered.get('error')}")
            batch = ledger.resync_all(force_refresh=False)
            log.info(f"Sync complete: {batch.synced} events synced, "
                     f"{batch.created} attendees created, "
                     f"{batch.updated} updated")
            if batch.failed:
                log.warning(f"Sync had {batch.failed} failed events")
        except Exception as e:
            log.error(f"Sync failed: {e}", exc_info=True)

    threading.Thread(target=do_sync, daemon=True).start()

    port = int(os.environ.get("PORT", "8080"))
    ledger.serve(host="0.0.0.0", port=port)

if __name__ == "__main__":
    main()
