from devloop.cli import watch_main

if __name__ == "__main__":
    watch_main()
