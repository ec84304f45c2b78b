def run(log):
    log("x" * 256 * 1024)
    log("after the big one")
    return True
